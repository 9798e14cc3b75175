from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .actions import CATALOG, ActionContext, ActionDefinition, ActionError, ActionOutcome, DependencyInstaller
from .consent import ConsentStore
from .git import GitClient, GitError
from .tags import neutralize_attribute_brackets, parse_directives
from .types import ApplyResult, ConsentResponse, Directive, DirectiveKind, ProjectContext

logger = logging.getLogger(__name__)

ConsentHook = Callable[[str, str], Awaitable[ConsentResponse]]

EXTRA_FILES_SUFFIX = " + extra files edited outside of Blaze"


class ApplyCancelled(Exception):
    pass


@dataclass(slots=True)
class ExecutionReport:
    applied: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=lambda: {"wrote": 0, "renamed": 0, "deleted": 0, "packages": 0})
    summary: str | None = None
    error: str | None = None

    @property
    def changed(self) -> bool:
        return any(self.counts.values())

    def record(self, outcome: ActionOutcome) -> None:
        self.applied.append(outcome.applied)
        if outcome.counter is not None:
            self.counts[outcome.counter] += outcome.count
        if outcome.summary:
            self.summary = outcome.summary


class ExecutionEngine:
    def __init__(
        self,
        *,
        git: GitClient,
        installer: DependencyInstaller,
        consent_store: ConsentStore,
        catalog: dict[DirectiveKind, ActionDefinition] | None = None,
    ):
        self.git = git
        self.installer = installer
        self.consent_store = consent_store
        self.catalog = catalog or CATALOG

    async def _await_consent(
        self,
        definition: ActionDefinition,
        preview: str,
        consent_hook: ConsentHook,
        cancel_event: asyncio.Event | None,
    ) -> ConsentResponse:
        if cancel_event is None:
            return await consent_hook(definition.name, preview)

        reply = asyncio.ensure_future(consent_hook(definition.name, preview))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({reply, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (reply, cancelled):
                if not waiter.done():
                    waiter.cancel()
        if cancelled.done() and not cancelled.cancelled():
            raise ApplyCancelled(f"Apply cancelled while waiting for consent to {definition.name}")
        return reply.result()

    async def _check_consent(
        self,
        definition: ActionDefinition,
        preview: str,
        consent_hook: ConsentHook | None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        decision = self.consent_store.resolve(definition.name, definition.default_consent)
        if decision == "always":
            return
        if decision == "never":
            raise ActionError(f"{definition.name} is disabled by consent settings: {preview}")
        if consent_hook is None:
            raise ActionError(f"{definition.name} requires consent: {preview}")

        response = await self._await_consent(definition, preview, consent_hook, cancel_event)
        if response == "accept-always":
            self.consent_store.set(definition.name, "always")
            return
        if response == "accept-once":
            return
        raise ActionError(f"Consent declined for {definition.name}: {preview}")

    async def execute(
        self,
        project: ProjectContext,
        directives: list[Directive],
        *,
        consent_hook: ConsentHook | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionReport:
        """Run complete directives in order, stopping at the first failure."""
        ctx = ActionContext(project=project, git=self.git, installer=self.installer)
        report = ExecutionReport()

        for index, directive in enumerate(directives):
            if not directive.complete:
                continue
            if cancel_event is not None and cancel_event.is_set():
                raise ApplyCancelled(f"Apply cancelled after {len(report.applied)} directive(s)")

            definition = self.catalog[directive.kind]
            try:
                params = definition.validate(directive.args)
                await self._check_consent(definition, definition.consent_preview(params), consent_hook, cancel_event)
                outcome = await asyncio.to_thread(definition.execute, ctx, params)
            except ActionError as exc:
                report.error = str(exc)
                logger.warning(
                    "Directive failed project_id=%s index=%s action=%s error=%s",
                    project.project_id,
                    index,
                    definition.name,
                    report.error,
                )
                break
            report.record(outcome)
        return report


def build_commit_message(summary: str | None, counts: dict[str, int]) -> str:
    stats = (
        f"wrote {counts.get('wrote', 0)} file(s), "
        f"renamed {counts.get('renamed', 0)} file(s), "
        f"deleted {counts.get('deleted', 0)} file(s), "
        f"added {counts.get('packages', 0)} package(s)"
    )
    if summary:
        return f"[blaze] {summary} - {stats}"
    return f"[blaze] {stats}"


class ResponseApplier:
    """Applies an assistant response to a project and commits the result."""

    def __init__(self, engine: ExecutionEngine, git: GitClient):
        self.engine = engine
        self.git = git

    async def apply(
        self,
        project: ProjectContext,
        payload: str,
        *,
        cancel_event: asyncio.Event | None = None,
        consent_hook: ConsentHook | None = None,
    ) -> ApplyResult:
        directives = parse_directives(neutralize_attribute_brackets(payload))
        async with project.apply_lock:
            report = await self.engine.execute(
                project,
                directives,
                consent_hook=consent_hook,
                cancel_event=cancel_event,
            )
            result = ApplyResult(applied=list(report.applied))
            if report.error:
                result.error = report.error
                return result
            if not report.changed:
                return result

            root = project.root_path
            try:
                staged = await asyncio.to_thread(self.git.staged_paths, root)
                if not staged:
                    logger.info("Nothing to commit after apply project_id=%s", project.project_id)
                    return result
                message = build_commit_message(report.summary, report.counts)
                result.commit_hash = await asyncio.to_thread(self.git.commit, root, message)
                result.updated_files = True
            except GitError as exc:
                result.error = f"Failed to commit changes: {exc}"
                return result

            logger.info(
                "Committed response project_id=%s commit=%s applied=%s",
                project.project_id,
                result.commit_hash,
                len(result.applied),
            )
            await self._amend_extra_files(project, message, result)
            return result

    async def _amend_extra_files(self, project: ProjectContext, message: str, result: ApplyResult) -> None:
        root = project.root_path
        try:
            extra = await asyncio.to_thread(self.git.status_paths, root)
            if not extra:
                return
            result.extra_files = extra
            await asyncio.to_thread(self.git.add_all, root)
            result.commit_hash = await asyncio.to_thread(self.git.commit, root, message + EXTRA_FILES_SUFFIX, amend=True)
        except GitError as exc:
            logger.warning("Could not commit extra files project_id=%s error=%s", project.project_id, exc)
            result.extra_files_error = str(exc)
