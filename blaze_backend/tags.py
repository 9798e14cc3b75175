from __future__ import annotations

import html
import re
from dataclasses import dataclass
from functools import lru_cache

from .types import Directive, DirectiveKind, Prose

TAG_KINDS: dict[str, DirectiveKind] = {
    "blaze-write": DirectiveKind.WRITE,
    "blaze-delete": DirectiveKind.DELETE,
    "blaze-rename": DirectiveKind.RENAME,
    "blaze-search-replace": DirectiveKind.SEARCH_REPLACE,
    "blaze-add-dependency": DirectiveKind.ADD_DEPENDENCY,
    "blaze-chat-summary": DirectiveKind.SUMMARY,
}
KIND_TAGS: dict[DirectiveKind, str] = {kind: tag for tag, kind in TAG_KINDS.items()}
ACTIONABLE_KINDS = frozenset(
    {
        DirectiveKind.WRITE,
        DirectiveKind.SEARCH_REPLACE,
        DirectiveKind.RENAME,
        DirectiveKind.DELETE,
        DirectiveKind.ADD_DEPENDENCY,
        DirectiveKind.SUMMARY,
    }
)

OPEN_TAG_RE = re.compile(
    r"<(" + "|".join(re.escape(tag) for tag in sorted(TAG_KINDS, key=len, reverse=True)) + r")(?=[\s>/]|$)",
    flags=re.IGNORECASE,
)
ATTR_RE = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*"([^"]*)"')
PARTIAL_ATTR_RE = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*"([^"]*)$')
PARTIAL_ENTITY_RE = re.compile(r"&[#\w]*$")
DIVIDER_LINE_RE = re.compile(r"^=======[ \t]*$", flags=re.MULTILINE)
REPLACE_LINE_RE = re.compile(r"^>>>>>>> REPLACE[ \t]*$", flags=re.MULTILINE)

LT_SUBSTITUTE = "＜"
GT_SUBSTITUTE = "＞"
SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"
CODE_FENCE = "```"


@dataclass(frozen=True, slots=True)
class _TagSpan:
    tag: str
    start: int
    attr_start: int
    attr_end: int
    open_complete: bool
    body_start: int
    body_end: int
    end: int
    complete: bool


@lru_cache(maxsize=None)
def _close_tag_re(tag: str) -> re.Pattern[str]:
    return re.compile(rf"</{re.escape(tag)}\s*>", flags=re.IGNORECASE)


def _find_open_tag_end(text: str, start: int) -> int | None:
    in_quote = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if ch == '"':
            in_quote = not in_quote
        elif ch == ">" and not in_quote:
            return idx
    return None


def _scan_tags(text: str) -> list[_TagSpan]:
    spans: list[_TagSpan] = []
    pos = 0
    size = len(text)
    while True:
        match = OPEN_TAG_RE.search(text, pos)
        if match is None:
            break
        tag = match.group(1).lower()
        attr_start = match.end()
        open_end = _find_open_tag_end(text, attr_start)
        if open_end is None:
            # Opening tag is still arriving; everything after it belongs to it.
            spans.append(_TagSpan(tag, match.start(), attr_start, size, False, size, size, size, False))
            break

        if open_end > attr_start and text[open_end - 1] == "/":
            spans.append(
                _TagSpan(tag, match.start(), attr_start, open_end - 1, True, open_end + 1, open_end + 1, open_end + 1, True)
            )
            pos = open_end + 1
            continue

        body_start = open_end + 1
        close = _close_tag_re(tag).search(text, body_start)
        if close is None:
            # A closing tag that is still arriving is not body text.
            body_end = body_start + len(_hold_back(text[body_start:].lower(), f"</{tag}>"))
            spans.append(_TagSpan(tag, match.start(), attr_start, open_end, True, body_start, body_end, size, False))
            break
        spans.append(_TagSpan(tag, match.start(), attr_start, open_end, True, body_start, close.start(), close.end(), True))
        pos = close.end()
    return spans


def _neutralize_quoted(attr_text: str) -> str:
    out: list[str] = []
    in_quote = False
    for ch in attr_text:
        if ch == '"':
            in_quote = not in_quote
        elif in_quote and ch == "<":
            ch = LT_SUBSTITUTE
        elif in_quote and ch == ">":
            ch = GT_SUBSTITUTE
        out.append(ch)
    return "".join(out)


def neutralize_attribute_brackets(text: str) -> str:
    """Replace ``<``/``>`` inside attribute values of recognized tags with full-width lookalikes.

    Only the quoted attribute values of recognized opening tags change. Prose,
    unrelated markup and tag bodies are returned untouched. The substitution is
    length-preserving, so offsets computed on the result map onto ``text``.
    """
    spans = _scan_tags(text)
    if not spans:
        return text
    parts: list[str] = []
    cursor = 0
    for span in spans:
        parts.append(text[cursor:span.attr_start])
        parts.append(_neutralize_quoted(text[span.attr_start:span.attr_end]))
        cursor = span.attr_end
    parts.append(text[cursor:])
    return "".join(parts)


def _decode_attribute(raw: str, *, partial: bool) -> str:
    value = _neutralize_quoted(f'"{raw}"')[1:-1]
    if partial:
        value = PARTIAL_ENTITY_RE.sub("", value)
    return html.unescape(value)


def _parse_attributes(attr_text: str, *, open_complete: bool) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in ATTR_RE.finditer(attr_text):
        value = _decode_attribute(match.group(2), partial=False)
        if value:
            attrs[match.group(1).lower()] = value

    if not open_complete and attr_text.count('"') % 2 == 1:
        partial = PARTIAL_ATTR_RE.search(attr_text)
        if partial is not None:
            value = _decode_attribute(partial.group(2), partial=True)
            if value:
                attrs[partial.group(1).lower()] = value
    return attrs


def _hold_back(text: str, marker: str) -> str:
    for size in range(min(len(marker), len(text)), 0, -1):
        if marker.startswith(text[-size:]):
            return text[:-size]
    return text


def _clean_body(raw: str, *, complete: bool) -> str:
    text = raw.strip()
    if not text:
        return ""
    lines = text.split("\n")

    if lines[0].startswith(CODE_FENCE):
        if not complete and len(lines) == 1:
            return ""
        lines.pop(0)
    elif not complete and len(lines) == 1 and CODE_FENCE.startswith(lines[0]):
        return ""

    if lines and lines[-1].startswith(CODE_FENCE):
        lines.pop()
    elif not complete and lines and CODE_FENCE.startswith(lines[-1].rstrip()):
        lines.pop()
    return "\n".join(lines)


def _split_search_replace(body: str, *, complete: bool) -> tuple[str, str | None, str | None]:
    """Split a search-replace body into (search, replace, unparsed trailing text)."""
    marker_idx = body.find(SEARCH_MARKER)
    if marker_idx == -1:
        return "", None, None

    rest = body[marker_idx + len(SEARCH_MARKER):]
    if rest.startswith("\n"):
        rest = rest[1:]

    divider = None
    for match in DIVIDER_LINE_RE.finditer(rest):
        if complete or match.end() < len(rest):
            divider = match
            break

    if divider is None:
        if complete:
            return rest, None, None
        if (DIVIDER_MARKER + "\n").startswith(rest):
            return "", None, None
        return _hold_back(rest, "\n" + DIVIDER_MARKER + "\n"), None, None

    search = rest[:divider.start()]
    if search.endswith("\n"):
        search = search[:-1]

    replace_part = rest[divider.end():]
    if replace_part.startswith("\n"):
        replace_part = replace_part[1:]

    end_marker = REPLACE_LINE_RE.search(replace_part)
    if end_marker is None:
        if complete:
            return search, replace_part, None
        if REPLACE_MARKER.startswith(replace_part):
            return search, "", None
        return search, _hold_back(replace_part, "\n" + REPLACE_MARKER), None

    replace = replace_part[:end_marker.start()]
    if replace.endswith("\n"):
        replace = replace[:-1]
    trailing = replace_part[end_marker.end():].strip() if complete else ""
    return search, replace, trailing or None


def _build_directive(text: str, span: _TagSpan) -> Directive:
    kind = TAG_KINDS[span.tag]
    args = _parse_attributes(text[span.attr_start:span.attr_end], open_complete=span.open_complete)

    if span.open_complete:
        body = _clean_body(text[span.body_start:span.body_end], complete=span.complete)
        if kind in (DirectiveKind.WRITE, DirectiveKind.SUMMARY):
            args["content"] = body
        elif kind is DirectiveKind.SEARCH_REPLACE:
            search, replace, unparsed = _split_search_replace(body, complete=span.complete)
            args["search"] = search
            if replace is not None:
                args["replace"] = replace
            if unparsed:
                args["unparsed"] = unparsed

    return Directive(kind=kind, args=args, complete=span.complete, start=span.start, end=span.end)


def parse_response(text: str) -> list[Directive | Prose]:
    """Split the cumulative response text into prose and directives, in order.

    Pure: the result depends only on ``text``. Directives whose closing tag has
    not arrived yet are returned with ``complete=False`` and whatever
    attributes and body have been received so far.
    """
    pieces: list[Directive | Prose] = []
    cursor = 0
    for span in _scan_tags(text):
        if span.start > cursor:
            pieces.append(Prose(text=text[cursor:span.start], start=cursor, end=span.start))
        pieces.append(_build_directive(text, span))
        cursor = span.end
    if cursor < len(text):
        pieces.append(Prose(text=text[cursor:], start=cursor, end=len(text)))
    return pieces


def parse_directives(text: str) -> list[Directive]:
    return [piece for piece in parse_response(text) if isinstance(piece, Directive)]


def extract_actionable_tags(text: str) -> str:
    blocks = [
        text[directive.start:directive.end]
        for directive in parse_directives(text)
        if directive.complete and directive.kind in ACTIONABLE_KINDS
    ]
    return "\n\n".join(blocks).strip()


def escape_attribute(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("\n", "&#10;")
        .replace("\r", "&#13;")
        .replace("\t", "&#9;")
    )


def render_tag(kind: DirectiveKind, args: dict[str, str], complete: bool) -> str | None:
    """Serialize a directive in its live form.

    Returns ``None`` while the attributes that identify the directive have not
    arrived yet.
    """
    tag = KIND_TAGS[kind]
    closing = f"</{tag}>"

    if kind is DirectiveKind.WRITE:
        if not args.get("path"):
            return None
        xml = (
            f'<{tag} path="{escape_attribute(args["path"])}" '
            f'description="{escape_attribute(args.get("description", ""))}">\n{args.get("content", "")}'
        )
        return xml + "\n" + closing if complete else xml

    if kind is DirectiveKind.SEARCH_REPLACE:
        if not args.get("path"):
            return None
        xml = (
            f'<{tag} path="{escape_attribute(args["path"])}" '
            f'description="{escape_attribute(args.get("description", ""))}">\n'
            f'{SEARCH_MARKER}\n{args.get("search", "")}'
        )
        if "replace" in args:
            xml += f"\n{DIVIDER_MARKER}\n{args['replace']}"
        if complete:
            if "replace" not in args:
                xml += f"\n{DIVIDER_MARKER}\n"
            xml += f"\n{REPLACE_MARKER}\n{closing}"
        return xml

    if kind is DirectiveKind.DELETE:
        if not args.get("path"):
            return None
        xml = f'<{tag} path="{escape_attribute(args["path"])}">'
        return xml + closing if complete else xml

    if kind is DirectiveKind.RENAME:
        if not args.get("from") or not args.get("to"):
            return None
        xml = f'<{tag} from="{escape_attribute(args["from"])}" to="{escape_attribute(args["to"])}">'
        return xml + closing if complete else xml

    if kind is DirectiveKind.ADD_DEPENDENCY:
        if not args.get("packages"):
            return None
        xml = f'<{tag} packages="{escape_attribute(args["packages"])}">'
        return xml + closing if complete else xml

    xml = f"<{tag}>{args.get('content', '')}"
    return xml + closing if complete else xml
