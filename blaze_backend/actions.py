from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import Settings
from .git import GitClient, GitError
from .integrations import resolve_binary
from .search_replace import apply_search_replace
from .tags import render_tag
from .types import ConsentDecision, Directive, DirectiveKind, ProjectContext, Prose
from .utils import atomic_write_text, normalize_rel_path, safe_join

logger = logging.getLogger(__name__)

MANIFEST_FILES = ("package.json", "package-lock.json", "pnpm-lock.yaml", "yarn.lock", "bun.lockb")


class ActionError(Exception):
    pass


class DependencyInstaller:
    def __init__(self, settings: Settings, *, timeout_seconds: int = 600):
        self.install_cmd = settings.install_cmd
        self.timeout_seconds = timeout_seconds

    def install(self, root: Path, packages: list[str]) -> list[str]:
        command = shlex.split(self.install_cmd)
        if not command:
            raise ActionError("No dependency install command is configured")
        binary = resolve_binary(command[0])
        if binary is None:
            raise ActionError(f"Package manager not found: {command[0]}")

        logger.info("Installing dependencies root=%s packages=%s", root, " ".join(packages))
        try:
            proc = subprocess.run(
                [binary, *command[1:], *packages],
                cwd=str(root),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ActionError(f"Dependency install timed out after {exc.timeout}s") from exc
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()[-2000:]
            raise ActionError(f"Dependency install failed (exit {proc.returncode}): {detail}")
        return [name for name in MANIFEST_FILES if (root / name).exists()]


@dataclass(slots=True)
class ActionContext:
    project: ProjectContext
    git: GitClient
    installer: DependencyInstaller


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    applied: str
    counter: str | None = None
    count: int = 1
    summary: str | None = None


class _ActionInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class WriteFileInput(_ActionInput):
    path: str = Field(min_length=1)
    content: str = ""
    description: str | None = None


class DeleteFileInput(_ActionInput):
    path: str = Field(min_length=1)


class RenameFileInput(_ActionInput):
    from_path: str = Field(alias="from", min_length=1)
    to_path: str = Field(alias="to", min_length=1)


class SearchReplaceInput(_ActionInput):
    path: str = Field(min_length=1)
    search: str = ""
    replace: str | None = None
    description: str | None = None
    unparsed: str | None = None

    @model_validator(mode="after")
    def _check_block(self) -> SearchReplaceInput:
        if self.unparsed:
            raise ValueError("only one SEARCH/REPLACE block is supported per directive")
        if self.replace is None:
            raise ValueError("missing ======= separator and replacement text")
        return self


class AddDependencyInput(_ActionInput):
    packages: list[str] = Field(min_length=1)

    @field_validator("packages", mode="before")
    @classmethod
    def _split_packages(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.split()
        return value


class ChatSummaryInput(_ActionInput):
    content: str = ""


@dataclass(frozen=True, slots=True)
class ActionDefinition:
    name: str
    description: str
    kind: DirectiveKind
    input_model: type[BaseModel]
    default_consent: ConsentDecision
    modifies_state: bool
    preview: Callable[[Any], str]
    run: Callable[[ActionContext, Any], ActionOutcome]

    def validate(self, args: dict[str, str]) -> BaseModel:
        try:
            return self.input_model.model_validate(args)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'args'}: {err['msg']}" for err in exc.errors()
            )
            raise ActionError(f"Invalid {self.name} arguments: {details}") from exc

    def consent_preview(self, params: BaseModel) -> str:
        return self.preview(params)

    def render(self, args: dict[str, str], complete: bool) -> str | None:
        return render_tag(self.kind, args, complete)

    def execute(self, ctx: ActionContext, params: BaseModel) -> ActionOutcome:
        try:
            return self.run(ctx, params)
        except ActionError:
            raise
        except ValueError as exc:
            raise ActionError(f"Invalid {self.name} arguments: {exc}") from exc
        except GitError as exc:
            raise ActionError(str(exc)) from exc
        except OSError as exc:
            raise ActionError(f"{self.name} failed: {exc}") from exc


def _resolve(ctx: ActionContext, rel_path: str) -> tuple[Path, str]:
    rel = normalize_rel_path(rel_path)
    return safe_join(ctx.project.root_path, rel), rel


def _write_file(ctx: ActionContext, params: WriteFileInput) -> ActionOutcome:
    target, rel = _resolve(ctx, params.path)
    atomic_write_text(target, params.content)
    ctx.git.add(ctx.project.root_path, [rel])
    return ActionOutcome(applied=f"Wrote {rel}", counter="wrote")


def _delete_file(ctx: ActionContext, params: DeleteFileInput) -> ActionOutcome:
    target, rel = _resolve(ctx, params.path)
    if not target.exists() and not target.is_symlink():
        logger.warning("Delete target does not exist path=%s project_id=%s", rel, ctx.project.project_id)
        return ActionOutcome(applied=f"Skipped delete of missing {rel}")
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    ctx.git.remove_cached(ctx.project.root_path, rel)
    return ActionOutcome(applied=f"Deleted {rel}", counter="deleted")


def _rename_file(ctx: ActionContext, params: RenameFileInput) -> ActionOutcome:
    source, from_rel = _resolve(ctx, params.from_path)
    target, to_rel = _resolve(ctx, params.to_path)
    if not source.exists():
        logger.warning("Rename source does not exist path=%s project_id=%s", from_rel, ctx.project.project_id)
        return ActionOutcome(applied=f"Skipped rename of missing {from_rel}")
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(source, target)
    ctx.git.add(ctx.project.root_path, [to_rel])
    ctx.git.remove_cached(ctx.project.root_path, from_rel)
    return ActionOutcome(applied=f"Renamed {from_rel} to {to_rel}", counter="renamed")


def _search_replace(ctx: ActionContext, params: SearchReplaceInput) -> ActionOutcome:
    target, rel = _resolve(ctx, params.path)
    if not target.is_file():
        raise ActionError(f"File does not exist: {rel}")
    with target.open("r", encoding="utf-8", newline="") as f:
        original = f.read()

    merged = apply_search_replace(original, params.search, params.replace or "", path=rel)
    if not merged.ok:
        raise ActionError(merged.error or f"Search/replace failed for {rel}")
    if merged.match_count > 1:
        logger.warning("Search text matched %s times; replaced the first path=%s", merged.match_count, rel)

    atomic_write_text(target, merged.content or "")
    ctx.git.add(ctx.project.root_path, [rel])
    return ActionOutcome(applied=f"Edited {rel}", counter="wrote")


def _add_dependency(ctx: ActionContext, params: AddDependencyInput) -> ActionOutcome:
    touched = ctx.installer.install(ctx.project.root_path, params.packages)
    ctx.git.add(ctx.project.root_path, touched)
    return ActionOutcome(
        applied=f"Installed {' '.join(params.packages)}",
        counter="packages",
        count=len(params.packages),
    )


def _chat_summary(_ctx: ActionContext, params: ChatSummaryInput) -> ActionOutcome:
    return ActionOutcome(applied="Recorded chat summary", summary=params.content.strip() or None)


CATALOG: dict[DirectiveKind, ActionDefinition] = {
    DirectiveKind.WRITE: ActionDefinition(
        name="write_file",
        description="Create or overwrite a file with the given content.",
        kind=DirectiveKind.WRITE,
        input_model=WriteFileInput,
        default_consent="always",
        modifies_state=True,
        preview=lambda p: f"Write to {p.path}",
        run=_write_file,
    ),
    DirectiveKind.DELETE: ActionDefinition(
        name="delete_file",
        description="Delete a file or directory.",
        kind=DirectiveKind.DELETE,
        input_model=DeleteFileInput,
        default_consent="always",
        modifies_state=True,
        preview=lambda p: f"Delete {p.path}",
        run=_delete_file,
    ),
    DirectiveKind.RENAME: ActionDefinition(
        name="rename_file",
        description="Move a file or directory to a new path.",
        kind=DirectiveKind.RENAME,
        input_model=RenameFileInput,
        default_consent="always",
        modifies_state=True,
        preview=lambda p: f"Rename {p.from_path} to {p.to_path}",
        run=_rename_file,
    ),
    DirectiveKind.SEARCH_REPLACE: ActionDefinition(
        name="search_replace",
        description="Replace an exact block of text inside an existing file.",
        kind=DirectiveKind.SEARCH_REPLACE,
        input_model=SearchReplaceInput,
        default_consent="always",
        modifies_state=True,
        preview=lambda p: f"Edit {p.path}",
        run=_search_replace,
    ),
    DirectiveKind.ADD_DEPENDENCY: ActionDefinition(
        name="add_dependency",
        description="Install packages with the project's package manager.",
        kind=DirectiveKind.ADD_DEPENDENCY,
        input_model=AddDependencyInput,
        default_consent="ask",
        modifies_state=True,
        preview=lambda p: f"Install {', '.join(p.packages)}",
        run=_add_dependency,
    ),
    DirectiveKind.SUMMARY: ActionDefinition(
        name="chat_summary",
        description="Record a short summary of the change for the commit message.",
        kind=DirectiveKind.SUMMARY,
        input_model=ChatSummaryInput,
        default_consent="always",
        modifies_state=False,
        preview=lambda _p: "Record chat summary",
        run=_chat_summary,
    ),
}

if set(CATALOG) != set(DirectiveKind):
    raise RuntimeError("Action catalog must cover every directive kind exactly once")

ACTION_NAMES = {definition.name for definition in CATALOG.values()}


def default_consents() -> dict[str, ConsentDecision]:
    return {definition.name: definition.default_consent for definition in CATALOG.values()}


def render_message_content(pieces: list[Directive | Prose]) -> str:
    parts: list[str] = []
    for piece in pieces:
        if isinstance(piece, Prose):
            parts.append(piece.text)
            continue
        rendered = CATALOG[piece.kind].render(piece.args, piece.complete)
        if rendered is not None:
            parts.append(rendered)
    return "".join(parts)
