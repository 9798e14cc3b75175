from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from typing import Any, AsyncIterator
from unittest import mock

from fastapi.testclient import TestClient

from blaze_backend.api import EVENT_CONSENT_REQUEST, create_app
from blaze_backend.chat_stream import EVENT_CHUNK, EVENT_END, EVENT_ERROR
from blaze_backend.config import Settings
from blaze_backend.model_client import ModelDelta
from blaze_backend.service_container import build_services

WRITE_TAG = '<blaze-write path="index.ts">\nconsole.log("hi");\n</blaze-write>'


class _FakeModelClient:
    def __init__(self) -> None:
        self.reply = ["Writing index.\n", WRITE_TAG]

    async def stream(self, prompt: str, *, chat_id: int) -> AsyncIterator[ModelDelta]:
        for chunk in self.reply:
            yield ModelDelta(text=chunk)
        yield ModelDelta(total_tokens=9)


def _parse_sse(body: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for block in body.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: ") :]))
    return events


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        settings = Settings(data_dir=str(self.base / "data"), consent_path=str(self.base / "data" / "consents.json"))
        self.model_client = _FakeModelClient()
        self.services = build_services(settings, model_client=self.model_client)
        self.app = create_app(self.services)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _create_project_and_chat(self, client: TestClient) -> tuple[str, int]:
        project = client.post("/v1/projects", json={"name": "demo", "root_path": str(self.base / "demo")})
        self.assertEqual(project.status_code, 200, project.text)
        project_id = project.json()["id"]
        chat = client.post(f"/v1/projects/{project_id}/chats", json={"org_id": "org_1", "workspace_id": "ws_1"})
        self.assertEqual(chat.status_code, 200, chat.text)
        return project_id, chat.json()["id"]

    def test_health(self) -> None:
        with TestClient(self.app) as client:
            self.assertEqual(client.get("/health").json(), {"ok": True})

    def test_consent_overrides_round_trip(self) -> None:
        with TestClient(self.app) as client:
            initial = client.get("/v1/consents").json()
            rows = {row["action"]: row for row in initial["actions"]}
            self.assertEqual(rows["add_dependency"]["effective"], "ask")

            updated = client.patch("/v1/consents", json={"action": "add_dependency", "decision": "always"})
            self.assertEqual(updated.status_code, 200)
            rows = {row["action"]: row for row in updated.json()["actions"]}
            self.assertEqual(rows["add_dependency"]["override"], "always")

            unknown = client.patch("/v1/consents", json={"action": "format_disk", "decision": "always"})
            self.assertEqual(unknown.status_code, 400)
            bad_decision = client.patch("/v1/consents", json={"action": "write_file", "decision": "maybe"})
            self.assertEqual(bad_decision.status_code, 422)

            reset = client.delete("/v1/consents").json()
            self.assertTrue(all(row["override"] is None for row in reset["actions"]))

    def test_projects_are_listed_and_reopened(self) -> None:
        with TestClient(self.app) as client:
            project_id, _chat_id = self._create_project_and_chat(client)
            again = client.post("/v1/projects", json={"name": "demo", "root_path": str(self.base / "demo")})
            self.assertEqual(again.json()["id"], project_id)
            self.assertEqual([p["id"] for p in client.get("/v1/projects").json()], [project_id])
            self.assertTrue((self.base / "demo" / ".git").is_dir())

            missing = client.post("/v1/projects/proj_missing/chats", json={"org_id": "o", "workspace_id": "w"})
            self.assertEqual(missing.status_code, 404)

    def test_sse_stream_applies_response(self) -> None:
        with TestClient(self.app) as client:
            _project_id, chat_id = self._create_project_and_chat(client)
            response = client.post(
                f"/v1/orgs/org_1/workspaces/ws_1/chats/{chat_id}/stream",
                json={"prompt": "Add an entry point", "request_id": "req_sse"},
            )

            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.headers["x-request-id"], "req_sse")
            events = _parse_sse(response.text)
            self.assertEqual([e["event"] for e in events], [EVENT_CHUNK, EVENT_CHUNK, EVENT_END])
            self.assertTrue(all(e["requestId"] == "req_sse" for e in events))
            end = events[-1]["payload"]
            self.assertTrue(end["updatedFiles"])
            self.assertEqual(end["totalTokens"], 9)
            self.assertEqual((self.base / "demo" / "index.ts").read_text(encoding="utf-8"), 'console.log("hi");')

    def test_stream_outside_workspace_is_forbidden(self) -> None:
        with TestClient(self.app) as client:
            _project_id, chat_id = self._create_project_and_chat(client)
            forbidden = client.post(f"/v1/orgs/org_2/workspaces/ws_1/chats/{chat_id}/stream", json={"prompt": "hi"})
            self.assertEqual(forbidden.status_code, 403)
            missing = client.post("/v1/orgs/org_1/workspaces/ws_1/chats/9999/stream", json={"prompt": "hi"})
            self.assertEqual(missing.status_code, 404)

    def test_cancel_unknown_stream(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/v1/orgs/org_1/workspaces/ws_1/chats/1/stream/req_none/cancel")
            self.assertEqual(response.json(), {"request_id": "req_none", "cancelled": False})

    def test_manual_apply_writes_audit_event(self) -> None:
        with TestClient(self.app) as client:
            project_id, _chat_id = self._create_project_and_chat(client)
            response = client.post(
                f"/v1/projects/{project_id}/apply",
                json={"payload": WRITE_TAG, "org_id": "org_1", "workspace_id": "ws_1"},
            )

            body = response.json()
            self.assertTrue(body["updatedFiles"])
            self.assertIsNotNone(body["commitHash"])
            self.assertEqual(body["selfHealing"]["attempts"][0]["strategy"], "initial")

            audit = client.get("/v1/audit", params={"org_id": "org_1"}).json()["items"]
            self.assertIn("manual_apply", [item["action"] for item in audit])

    def test_websocket_cannot_cancel_streams_of_other_connections(self) -> None:
        with TestClient(self.app) as client, client.websocket_connect("/v1/ws") as ws:
            with mock.patch.object(self.services.chat_stream, "cancel", return_value=True) as cancel:
                ws.send_json({"type": "cancel_chat_stream", "requestId": "req_elsewhere"})
                reply = ws.receive_json()

            self.assertEqual(reply["event"], EVENT_ERROR)
            self.assertEqual(reply["requestId"], "req_elsewhere")
            cancel.assert_not_called()

    def test_websocket_rejects_malformed_messages(self) -> None:
        with TestClient(self.app) as client, client.websocket_connect("/v1/ws") as ws:
            ws.send_text("not json")
            self.assertEqual(ws.receive_json()["event"], EVENT_ERROR)

            ws.send_json({"type": "start_chat_stream", "requestId": "req_bad"})
            reply = ws.receive_json()
            self.assertEqual(reply["event"], EVENT_ERROR)
            self.assertEqual(reply["requestId"], "req_bad")
            self.assertTrue(reply["payload"]["error"].startswith("Invalid message"))

            ws.send_json({"type": "unknown"})
            self.assertEqual(ws.receive_json()["event"], EVENT_ERROR)

    def test_websocket_stream_with_consent_prompt(self) -> None:
        self.model_client.reply = ['<blaze-add-dependency packages="left-pad"></blaze-add-dependency>']
        with TestClient(self.app) as client:
            _project_id, chat_id = self._create_project_and_chat(client)
            with client.websocket_connect("/v1/ws") as ws:
                ws.send_json(
                    {
                        "type": "start_chat_stream",
                        "requestId": "req_ws",
                        "orgId": "org_1",
                        "workspaceId": "ws_1",
                        "chatId": chat_id,
                        "prompt": "add left-pad",
                    }
                )
                received: list[dict[str, Any]] = []
                while True:
                    message = ws.receive_json()
                    received.append(message)
                    if message["event"] == EVENT_CONSENT_REQUEST:
                        self.assertEqual(message["payload"], {"action": "add_dependency", "preview": "Install left-pad"})
                        ws.send_json(
                            {
                                "type": "consent_response",
                                "requestId": "req_ws",
                                "action": "add_dependency",
                                "decision": "decline",
                            }
                        )
                    if message["event"] == EVENT_END:
                        break

            events = [m["event"] for m in received]
            self.assertIn(EVENT_CONSENT_REQUEST, events)
            end = received[-1]["payload"]
            self.assertFalse(end["updatedFiles"])
            self.assertIn("Consent declined", end["error"])

    def test_websocket_start_for_foreign_chat_reports_error(self) -> None:
        with TestClient(self.app) as client:
            _project_id, chat_id = self._create_project_and_chat(client)
            with client.websocket_connect("/v1/ws") as ws:
                ws.send_json(
                    {
                        "type": "start_chat_stream",
                        "requestId": "req_x",
                        "orgId": "org_9",
                        "workspaceId": "ws_1",
                        "chatId": chat_id,
                        "prompt": "hi",
                    }
                )
                error = ws.receive_json()
                end = ws.receive_json()
            self.assertEqual(error["event"], EVENT_ERROR)
            self.assertEqual(end["event"], EVENT_END)
            self.assertFalse(end["payload"]["updatedFiles"])


if __name__ == "__main__":
    unittest.main()
