from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol

from .actions import render_message_content
from .db import ServiceRepository
from .engine import ApplyCancelled, ConsentHook, ResponseApplier
from .model_client import ModelClient
from .project_store import ProjectStore
from .self_heal import MAX_APPLY_ATTEMPTS, apply_with_self_healing
from .tags import extract_actionable_tags, parse_response
from .types import ApplyMode, ApplyResult, ProjectContext, RequestScope, SelfHealingResult

logger = logging.getLogger(__name__)

EVENT_CHUNK = "chat:response:chunk"
EVENT_ERROR = "chat:response:error"
EVENT_END = "chat:response:end"

TurnStatus = Literal["idle", "streaming", "ended", "cancelled", "errored"]
TurnPhase = Literal["stream", "apply"]


class SinkClosed(Exception):
    pass


class EventSink(Protocol):
    async def send(self, event: str, request_id: str, payload: dict[str, Any]) -> None: ...


class StableEmitter:
    """Forwards turn events to a sink; nothing gets through after ``end``."""

    def __init__(self, request_id: str, sink: EventSink):
        self.request_id = request_id
        self.sink = sink
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    async def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self.sink.send(event, self.request_id, payload)
        except SinkClosed:
            logger.debug("Dropping event for closed sink request_id=%s event=%s", self.request_id, event)

    async def chunk(self, payload: dict[str, Any]) -> None:
        if self._ended:
            return
        await self._deliver(EVENT_CHUNK, payload)

    async def end(self, payload: dict[str, Any]) -> None:
        if self._ended:
            return
        self._ended = True
        await self._deliver(EVENT_END, payload)

    async def error(self, message: str, *, chat_id: int) -> None:
        if self._ended:
            return
        await self._deliver(EVENT_ERROR, {"chatId": chat_id, "error": message})
        await self.end({"chatId": chat_id, "updatedFiles": False})


@dataclass(frozen=True, slots=True)
class ChatStreamRequest:
    request_id: str
    chat_id: int
    prompt: str
    apply_mode: ApplyMode | None = None


@dataclass(slots=True)
class Turn:
    request_id: str
    chat_id: int
    prompt: str
    scope: RequestScope
    project: ProjectContext
    apply_mode: ApplyMode
    emitter: StableEmitter
    consent_hook: ConsentHook | None = None
    raw_text: str = ""
    status: TurnStatus = "idle"
    phase: TurnPhase = "stream"
    total_tokens: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class ChatStreamService:
    def __init__(
        self,
        *,
        project_store: ProjectStore,
        model_client: ModelClient,
        applier: ResponseApplier,
        repository: ServiceRepository,
        default_apply_mode: ApplyMode = "auto",
        max_apply_attempts: int = MAX_APPLY_ATTEMPTS,
    ):
        self.project_store = project_store
        self.model_client = model_client
        self.applier = applier
        self.repository = repository
        self.default_apply_mode = default_apply_mode
        self.max_apply_attempts = max_apply_attempts
        self._turns: dict[str, Turn] = {}
        self._side_effects: set[asyncio.Task[None]] = set()

    def is_active(self, request_id: str) -> bool:
        return request_id in self._turns

    async def start(
        self,
        request: ChatStreamRequest,
        *,
        scope: RequestScope,
        sink: EventSink,
        consent_hook: ConsentHook | None = None,
    ) -> Turn:
        if request.request_id in self._turns:
            raise ValueError(f"Stream already active for request {request.request_id}")
        project, _binding = await asyncio.to_thread(self.project_store.resolve_chat, request.chat_id, scope)
        # Another start for the same id may have registered while the lookup ran.
        if request.request_id in self._turns:
            raise ValueError(f"Stream already active for request {request.request_id}")

        turn = Turn(
            request_id=request.request_id,
            chat_id=request.chat_id,
            prompt=request.prompt,
            scope=scope,
            project=project,
            apply_mode=request.apply_mode or self.default_apply_mode,
            emitter=StableEmitter(request.request_id, sink),
            consent_hook=consent_hook,
        )
        self._turns[turn.request_id] = turn
        turn.task = asyncio.create_task(self._run_turn(turn))
        logger.info(
            "Chat stream started request_id=%s chat_id=%s project_id=%s apply_mode=%s",
            turn.request_id,
            turn.chat_id,
            project.project_id,
            turn.apply_mode,
        )
        return turn

    def cancel(self, request_id: str) -> bool:
        turn = self._turns.get(request_id)
        if turn is None or turn.emitter.ended:
            return False

        turn.cancel_event.set()
        if turn.status == "streaming" and turn.phase == "stream" and turn.task is not None and not turn.task.done():
            turn.task.cancel()
        logger.info("Chat stream cancel requested request_id=%s phase=%s", request_id, turn.phase)
        self._launch_side_effect(
            "audit_cancel",
            self.repository.write_audit_event,
            turn.scope,
            "chat_stream_cancel",
            "chat",
            str(turn.chat_id),
            {"requestId": request_id, "phase": turn.phase},
        )
        return True

    async def wait(self, turn: Turn) -> None:
        if turn.task is not None:
            await asyncio.gather(turn.task, return_exceptions=True)

    async def drain_side_effects(self) -> None:
        while self._side_effects:
            await asyncio.gather(*list(self._side_effects), return_exceptions=True)

    async def shutdown(self) -> None:
        for turn in list(self._turns.values()):
            self.cancel(turn.request_id)
        tasks = [turn.task for turn in self._turns.values() if turn.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.drain_side_effects()

    async def apply_payload(
        self,
        project: ProjectContext,
        payload: str,
        *,
        cancel_event: asyncio.Event | None = None,
        consent_hook: ConsentHook | None = None,
    ) -> SelfHealingResult:
        async def apply_response(candidate: str) -> ApplyResult:
            return await self.applier.apply(project, candidate, cancel_event=cancel_event, consent_hook=consent_hook)

        return await apply_with_self_healing(payload, apply_response, max_attempts=self.max_apply_attempts)

    def _chunk_payload(self, turn: Turn) -> dict[str, Any]:
        return {
            "chatId": turn.chat_id,
            "messages": [
                {"role": "user", "content": turn.prompt},
                {"role": "assistant", "content": render_message_content(parse_response(turn.raw_text))},
            ],
        }

    async def _complete(self, turn: Turn) -> dict[str, Any]:
        payload: dict[str, Any] = {"chatId": turn.chat_id}
        if turn.apply_mode == "manual":
            payload["updatedFiles"] = False
            pending = extract_actionable_tags(turn.raw_text)
            if pending:
                payload["pendingPayload"] = pending
        else:
            healing = await self.apply_payload(
                turn.project,
                turn.raw_text,
                cancel_event=turn.cancel_event,
                consent_hook=turn.consent_hook,
            )
            payload.update(healing.result.to_payload())
            payload["selfHealing"] = healing.to_payload()
            if healing.recovered_by_self_healing:
                logger.info("Apply recovered by self-healing request_id=%s", turn.request_id)

        if turn.total_tokens:
            payload["totalTokens"] = turn.total_tokens
        if turn.cancel_event.is_set():
            payload["cancelled"] = True
        return payload

    async def _finish_cancelled(self, turn: Turn) -> None:
        turn.status = "cancelled"
        await turn.emitter.end({"chatId": turn.chat_id, "updatedFiles": False, "cancelled": True})

    async def _run_turn(self, turn: Turn) -> None:
        try:
            if turn.cancel_event.is_set():
                await self._finish_cancelled(turn)
                return
            turn.status = "streaming"
            self._launch_side_effect(
                "audit_start",
                self.repository.write_audit_event,
                turn.scope,
                "chat_stream_start",
                "chat",
                str(turn.chat_id),
                {"requestId": turn.request_id, "projectId": turn.project.project_id},
            )

            try:
                async for delta in self.model_client.stream(turn.prompt, chat_id=turn.chat_id):
                    if delta.total_tokens is not None:
                        turn.total_tokens = delta.total_tokens
                    if delta.text:
                        turn.raw_text += delta.text
                        await turn.emitter.chunk(self._chunk_payload(turn))
            except Exception as exc:
                logger.warning("Model stream failed request_id=%s error=%s", turn.request_id, exc)
                turn.status = "errored"
                await turn.emitter.error(str(exc), chat_id=turn.chat_id)
                return

            turn.phase = "apply"
            end_payload = await self._complete(turn)
            turn.status = "cancelled" if end_payload.get("cancelled") else "ended"
            await turn.emitter.end(end_payload)
        except ApplyCancelled as exc:
            logger.info("Apply cancelled request_id=%s detail=%s", turn.request_id, exc)
            await self._finish_cancelled(turn)
        except asyncio.CancelledError:
            await self._finish_cancelled(turn)
            raise
        except Exception as exc:
            logger.exception("Chat stream crashed request_id=%s", turn.request_id)
            turn.status = "errored"
            await turn.emitter.error(str(exc), chat_id=turn.chat_id)
        finally:
            self._turns.pop(turn.request_id, None)
            self._record_turn_end(turn)

    def _record_turn_end(self, turn: Turn) -> None:
        self._launch_side_effect("usage_requests", self.repository.record_usage, turn.scope, "requests", 1)
        if turn.total_tokens > 0:
            self._launch_side_effect("usage_tokens", self.repository.record_usage, turn.scope, "tokens", turn.total_tokens)
        self._launch_side_effect(
            "audit_end",
            self.repository.write_audit_event,
            turn.scope,
            "chat_stream_end",
            "chat",
            str(turn.chat_id),
            {"requestId": turn.request_id, "status": turn.status, "totalTokens": turn.total_tokens},
        )

    def _launch_side_effect(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        async def run() -> None:
            try:
                await asyncio.to_thread(func, *args)
            except Exception:
                logger.exception("Side effect failed label=%s", label)

        task = asyncio.create_task(run())
        self._side_effects.add(task)
        task.add_done_callback(self._side_effects.discard)
