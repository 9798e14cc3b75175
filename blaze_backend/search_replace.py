from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class MergeResult:
    ok: bool
    content: str | None = None
    error: str | None = None
    match_count: int = 0


def apply_search_replace(original: str, search: str, replace: str, *, path: str) -> MergeResult:
    """Replace the first exact occurrence of ``search`` in ``original``.

    Matching is character-exact and contiguous. When the search text occurs
    more than once only the first occurrence changes; ``match_count`` reports
    how many there were.
    """
    if not search:
        return MergeResult(ok=False, error=f"Search text is empty for {path}")

    match_count = original.count(search)
    if match_count == 0:
        return MergeResult(ok=False, error=f"Search text not found in {path}")

    return MergeResult(ok=True, content=original.replace(search, replace, 1), match_count=match_count)
