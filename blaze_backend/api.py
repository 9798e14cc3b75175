from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .actions import default_consents
from .chat_stream import EVENT_END, EVENT_ERROR, ChatStreamRequest, SinkClosed, StableEmitter
from .integrations import integration_status
from .project_store import ScopeError
from .schemas import (
    ApplyRequest,
    ApplyResponse,
    CancelChatStreamMessage,
    CancelResponse,
    ChatCreateRequest,
    ChatResponse,
    ConsentReplyMessage,
    ConsentsResponse,
    ConsentUpdateRequest,
    ProjectCreateRequest,
    ProjectResponse,
    StartChatStreamMessage,
    StreamRequest,
    inbound_message_adapter,
)
from .service_container import Services
from .types import ConsentResponse, ProjectContext, RequestScope
from .utils import make_id

logger = logging.getLogger(__name__)

EVENT_CONSENT_REQUEST = "chat:consent:request"


class QueueSink:
    """Buffers turn events for a server-sent events response."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._closed = False

    async def send(self, event: str, request_id: str, payload: dict[str, Any]) -> None:
        if self._closed:
            raise SinkClosed(request_id)
        self._queue.put_nowait((event, payload))

    def close(self) -> None:
        self._closed = True

    async def events(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        while True:
            event, payload = await self._queue.get()
            yield event, payload
            if event == EVENT_END:
                return


class WebSocketSink:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, request_id: str, payload: dict[str, Any]) -> None:
        if self._closed:
            raise SinkClosed(request_id)
        try:
            async with self._send_lock:
                await self.websocket.send_json({"event": event, "requestId": request_id, "payload": payload})
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise SinkClosed(request_id) from exc

    def close(self) -> None:
        self._closed = True


def _format_sse(event: str, request_id: str, payload: dict[str, Any]) -> str:
    data = json.dumps({"event": event, "requestId": request_id, "payload": payload})
    return f"event: {event}\ndata: {data}\n\n"


def _project_response(context: ProjectContext) -> ProjectResponse:
    return ProjectResponse(
        id=context.project_id,
        name=context.name,
        root_path=str(context.root_path),
        created_at=context.created_at,
    )


def _project_or_404(services: Services, project_id: str) -> ProjectContext:
    context = services.project_store.get(project_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Project not loaded")
    return context


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Blaze Backend", version="0.1.0")
    chat_stream = services.chat_stream

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await chat_stream.shutdown()
        services.project_store.close()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/health/integrations")
    async def health_integrations() -> dict[str, Any]:
        return await asyncio.to_thread(integration_status, services.settings)

    @app.get("/v1/consents", response_model=ConsentsResponse)
    async def get_consents() -> ConsentsResponse:
        return ConsentsResponse(**services.consent_store.public_view(default_consents()))

    @app.patch("/v1/consents", response_model=ConsentsResponse)
    async def patch_consents(request: ConsentUpdateRequest) -> ConsentsResponse:
        services.consent_store.set(request.action, request.decision)
        return ConsentsResponse(**services.consent_store.public_view(default_consents()))

    @app.delete("/v1/consents", response_model=ConsentsResponse)
    async def reset_consents() -> ConsentsResponse:
        services.consent_store.reset()
        return ConsentsResponse(**services.consent_store.public_view(default_consents()))

    @app.post("/v1/projects", response_model=ProjectResponse)
    async def create_or_open_project(request: ProjectCreateRequest) -> ProjectResponse:
        try:
            context = await asyncio.to_thread(
                services.project_store.open_or_create,
                name=request.name,
                root_path=request.root_path,
            )
        except PermissionError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return _project_response(context)

    @app.get("/v1/projects", response_model=list[ProjectResponse])
    async def list_projects() -> list[ProjectResponse]:
        return [_project_response(context) for context in services.project_store.list_projects()]

    @app.post("/v1/projects/{project_id}/chats", response_model=ChatResponse)
    async def create_chat(project_id: str, request: ChatCreateRequest) -> ChatResponse:
        _project_or_404(services, project_id)
        binding = services.project_store.create_chat(
            project_id=project_id,
            org_id=request.org_id,
            workspace_id=request.workspace_id,
            title=request.title,
        )
        return ChatResponse(
            id=binding.chat_id,
            project_id=binding.project_id,
            org_id=binding.org_id,
            workspace_id=binding.workspace_id,
            title=binding.title,
            created_at=binding.created_at,
        )

    @app.post("/v1/projects/{project_id}/apply", response_model=ApplyResponse)
    async def apply_payload(project_id: str, request: ApplyRequest) -> ApplyResponse:
        context = _project_or_404(services, project_id)
        scope = RequestScope(org_id=request.org_id, workspace_id=request.workspace_id, user_id=request.user_id)
        healing = await chat_stream.apply_payload(context, request.payload)
        result = healing.result
        await asyncio.to_thread(
            services.repository.write_audit_event,
            scope,
            "manual_apply",
            "project",
            project_id,
            {"updatedFiles": result.updated_files, "error": result.error, "commitHash": result.commit_hash},
        )
        return ApplyResponse(
            updatedFiles=result.updated_files,
            error=result.error,
            extraFiles=result.extra_files,
            extraFilesError=result.extra_files_error,
            applied=result.applied,
            commitHash=result.commit_hash,
            selfHealing=healing.to_payload(),
        )

    @app.post("/v1/orgs/{org_id}/workspaces/{workspace_id}/chats/{chat_id}/stream")
    async def stream_chat(org_id: str, workspace_id: str, chat_id: int, request: StreamRequest) -> StreamingResponse:
        scope = RequestScope(org_id=org_id, workspace_id=workspace_id, user_id=request.user_id)
        request_id = request.request_id or make_id("req")
        sink = QueueSink()
        await chat_stream.start(
            ChatStreamRequest(request_id=request_id, chat_id=chat_id, prompt=request.prompt, apply_mode=request.apply_mode),
            scope=scope,
            sink=sink,
        )

        async def generator() -> AsyncIterator[str]:
            try:
                async for event, payload in sink.events():
                    yield _format_sse(event, request_id, payload)
            finally:
                sink.close()
                # Client went away before the end event.
                if chat_stream.is_active(request_id):
                    chat_stream.cancel(request_id)

        return StreamingResponse(generator(), media_type="text/event-stream", headers={"X-Request-Id": request_id})

    @app.post(
        "/v1/orgs/{org_id}/workspaces/{workspace_id}/chats/{chat_id}/stream/{request_id}/cancel",
        response_model=CancelResponse,
    )
    async def cancel_stream(org_id: str, workspace_id: str, chat_id: int, request_id: str) -> CancelResponse:
        _ = (org_id, workspace_id, chat_id)
        return CancelResponse(request_id=request_id, cancelled=chat_stream.cancel(request_id))

    @app.get("/v1/audit")
    async def list_audit(
        org_id: str | None = None,
        workspace_id: str | None = None,
        after_id: int = Query(default=0, ge=0),
        limit: int = Query(default=200, ge=1, le=1000),
    ) -> dict[str, Any]:
        items = await asyncio.to_thread(
            services.repository.list_audit_events,
            org_id=org_id,
            workspace_id=workspace_id,
            after_id=after_id,
            limit=limit,
        )
        return {"items": items}

    @app.websocket("/v1/ws")
    async def chat_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        sink = WebSocketSink(websocket)
        owned: set[str] = set()
        pending_consents: dict[tuple[str, str], asyncio.Future[ConsentResponse]] = {}

        def consent_hook_for(request_id: str):
            async def ask(action: str, preview: str) -> ConsentResponse:
                future: asyncio.Future[ConsentResponse] = asyncio.get_running_loop().create_future()
                pending_consents[(request_id, action)] = future
                try:
                    await sink.send(EVENT_CONSENT_REQUEST, request_id, {"action": action, "preview": preview})
                except SinkClosed:
                    pending_consents.pop((request_id, action), None)
                    return "decline"
                return await future

            return ask

        try:
            while True:
                text = await websocket.receive_text()
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError:
                    await sink.send(EVENT_ERROR, "", {"error": "Invalid message: not JSON"})
                    continue
                try:
                    message = inbound_message_adapter.validate_python(raw)
                except ValidationError as exc:
                    request_id = str(raw.get("requestId", "")) if isinstance(raw, dict) else ""
                    await sink.send(EVENT_ERROR, request_id, {"error": f"Invalid message: {exc.errors()[0]['msg']}"})
                    continue

                if isinstance(message, StartChatStreamMessage):
                    scope = RequestScope(org_id=message.org_id, workspace_id=message.workspace_id, user_id=message.user_id)
                    try:
                        await chat_stream.start(
                            ChatStreamRequest(
                                request_id=message.request_id,
                                chat_id=message.chat_id,
                                prompt=message.prompt,
                                apply_mode=message.apply_mode,
                            ),
                            scope=scope,
                            sink=sink,
                            consent_hook=consent_hook_for(message.request_id),
                        )
                    except (ScopeError, ValueError) as exc:
                        await StableEmitter(message.request_id, sink).error(str(exc), chat_id=message.chat_id)
                        continue
                    owned.add(message.request_id)
                elif isinstance(message, CancelChatStreamMessage):
                    if message.request_id not in owned:
                        await sink.send(
                            EVENT_ERROR, message.request_id, {"error": "Unknown request for this connection"}
                        )
                        continue
                    chat_stream.cancel(message.request_id)
                elif isinstance(message, ConsentReplyMessage):
                    future = pending_consents.pop((message.request_id, message.action), None)
                    if future is not None and not future.done():
                        future.set_result(message.decision)
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected active_streams=%s", len(owned))
        finally:
            sink.close()
            for future in pending_consents.values():
                if not future.done():
                    future.set_result("decline")
            for request_id in owned:
                if chat_stream.is_active(request_id):
                    chat_stream.cancel(request_id)

    @app.exception_handler(ScopeError)
    async def scope_error_handler(_request: Any, exc: ScopeError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
