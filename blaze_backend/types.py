from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

ConsentDecision = Literal["never", "ask", "always"]
ConsentResponse = Literal["accept-once", "accept-always", "decline"]
ApplyStrategy = Literal["initial", "retry-actionable-tags", "retry-same-payload"]
ApplyMode = Literal["auto", "manual"]


class DirectiveKind(str, Enum):
    WRITE = "write"
    DELETE = "delete"
    RENAME = "rename"
    SEARCH_REPLACE = "search-replace"
    ADD_DEPENDENCY = "add-dependency"
    SUMMARY = "summary"


@dataclass(frozen=True, slots=True)
class Directive:
    kind: DirectiveKind
    args: dict[str, str]
    complete: bool
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class Prose:
    text: str
    start: int
    end: int


@dataclass(slots=True)
class ApplyResult:
    updated_files: bool = False
    error: str | None = None
    extra_files: list[str] = field(default_factory=list)
    extra_files_error: str | None = None
    applied: list[str] = field(default_factory=list)
    commit_hash: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"updatedFiles": self.updated_files}
        if self.error:
            payload["error"] = self.error
        if self.extra_files:
            payload["extraFiles"] = list(self.extra_files)
        if self.extra_files_error:
            payload["extraFilesError"] = self.extra_files_error
        return payload


@dataclass(frozen=True, slots=True)
class ApplyAttempt:
    strategy: ApplyStrategy
    payload: str
    error: str | None = None


@dataclass(slots=True)
class SelfHealingResult:
    result: ApplyResult
    attempts: list[ApplyAttempt]
    recovered_by_self_healing: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "attempts": [{"strategy": a.strategy, "error": a.error} for a in self.attempts],
            "recoveredBySelfHealing": self.recovered_by_self_healing,
        }


@dataclass(frozen=True, slots=True)
class RequestScope:
    org_id: str
    workspace_id: str
    user_id: str | None = None


@dataclass(slots=True)
class ProjectContext:
    project_id: str
    name: str
    root_path: Path
    created_at: str
    apply_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(slots=True)
class ChatBinding:
    chat_id: int
    project_id: str
    org_id: str
    workspace_id: str
    title: str
    created_at: str
