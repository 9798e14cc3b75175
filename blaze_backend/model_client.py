from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator, Protocol
from urllib import error, request

from .config import Settings

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTIONS = """You are Blaze, an assistant that edits the user's project.
Explain briefly what you are doing, then express every change with these tags:
<blaze-write path="src/file.ts" description="short reason">full file content</blaze-write>
<blaze-search-replace path="src/file.ts" description="short reason">
<<<<<<< SEARCH
exact existing lines
=======
replacement lines
>>>>>>> REPLACE
</blaze-search-replace>
<blaze-rename from="old/path" to="new/path"></blaze-rename>
<blaze-delete path="path/to/remove"></blaze-delete>
<blaze-add-dependency packages="pkg-a pkg-b"></blaze-add-dependency>
End with <blaze-chat-summary>one line summary</blaze-chat-summary>.
Use one SEARCH/REPLACE block per blaze-search-replace tag. Paths are relative to the project root.
"""


class ModelStreamError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class ModelDelta:
    text: str = ""
    total_tokens: int | None = None


class ModelClient(Protocol):
    def stream(self, prompt: str, *, chat_id: int) -> AsyncIterator[ModelDelta]: ...


def _parse_sse_event(data: str) -> ModelDelta | None:
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Ignoring non-JSON stream event")
        return None

    event_type = event.get("type")
    if event_type == "response.output_text.delta":
        return ModelDelta(text=str(event.get("delta") or ""))
    if event_type == "response.completed":
        usage = (event.get("response") or {}).get("usage") or {}
        return ModelDelta(total_tokens=int(usage.get("total_tokens") or 0))
    if event_type in {"error", "response.failed"}:
        detail: Any = event.get("message") or (event.get("response") or {}).get("error") or event
        raise ModelStreamError(f"Model stream failed: {detail}")
    return None


class OpenAIResponsesClient:
    """Streams text from an OpenAI-compatible ``/responses`` endpoint."""

    def __init__(self, settings: Settings):
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model
        self.base_url = settings.openai_base_url
        self.timeout_seconds = settings.openai_timeout_seconds

    def _iter_deltas(self, prompt: str, stop: threading.Event) -> Iterator[ModelDelta]:
        payload = {"model": self.model, "instructions": SYSTEM_INSTRUCTIONS, "input": prompt, "stream": True}
        url = f"{self.base_url.rstrip('/')}/responses"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        req = request.Request(url, data=json.dumps(payload).encode("utf-8"), headers=headers, method="POST")

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                for raw_line in response:
                    if stop.is_set():
                        return
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        return
                    delta = _parse_sse_event(data)
                    if delta is not None:
                        yield delta
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ModelStreamError(f"Model request failed status={exc.code} detail={detail[:500]}") from exc
        except error.URLError as exc:
            raise ModelStreamError(f"Model request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ModelStreamError("Model request timed out") from exc

    async def stream(self, prompt: str, *, chat_id: int) -> AsyncIterator[ModelDelta]:
        if not self.api_key:
            raise ModelStreamError("No model API key configured")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ModelDelta | Exception | None] = asyncio.Queue()
        stop = threading.Event()

        def push(item: ModelDelta | Exception | None) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, item)

        def reader() -> None:
            try:
                for delta in self._iter_deltas(prompt, stop):
                    push(delta)
            except ModelStreamError as exc:
                push(exc)
            except Exception as exc:
                logger.exception("Model stream reader crashed chat_id=%s", chat_id)
                push(ModelStreamError(str(exc)))
            push(None)

        logger.info("Model stream started chat_id=%s model=%s", chat_id, self.model)
        loop.run_in_executor(None, reader)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stop.set()
