"""Integration tests for the relay HTTP API."""

import asyncio
import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from agent_relay.approvals import ApprovalCoordinator
from agent_relay.credentials import CredentialStore
from agent_relay.dispatcher import CommandDispatcher
from agent_relay.models import EventType
from agent_relay.process_session import ProcessSessionError
from agent_relay.server import create_app

from conftest import FakeProcess, events_of, result_json, sentinel_line, wait_until


class FailingProcess(FakeProcess):
    async def start(self) -> int:
        raise ProcessSessionError("Failed to spawn bash: not found")


def build_app(registry, notifier, relay_config, process_factory=FakeProcess):
    FakeProcess.instances = []
    dispatcher = CommandDispatcher(registry, notifier, config=relay_config, process_factory=process_factory)
    coordinator = ApprovalCoordinator(registry, notifier, config=relay_config)
    credentials = CredentialStore(
        {"credentials": {"users": {"7": "work"}}},
        environ={"CLAUDE_CODE_OAUTH_TOKEN": "tok-default", "CLAUDE_CODE_OAUTH_TOKEN_WORK": "tok-work"},
    )
    return create_app(
        registry=registry,
        dispatcher=dispatcher,
        coordinator=coordinator,
        notifier=notifier,
        credentials=credentials,
        config=relay_config,
    )


@pytest.fixture
def test_client(registry, notifier, relay_config):
    """TestClient kept open so every request shares one event loop."""
    with TestClient(build_app(registry, notifier, relay_config)) as client:
        yield client


def feed(client, channel_id, chunk):
    """Push process output through the dispatcher on the app's event loop."""
    client.portal.call(client.app.state.dispatcher.handle_output, channel_id, chunk)


def process_for(client, channel_id):
    return client.app.state.registry.get(channel_id).process


def done_line(client, channel_id):
    return sentinel_line(client.app.state.dispatcher, channel_id)


class TestHealthEndpoints:

    def test_root(self, test_client):
        response = test_client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "agent-relay"

    def test_health_counts(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        data = test_client.get("/health").json()
        assert data == {"status": "healthy", "channels": 1, "pending_approvals": 0}

    def test_unconfigured_dispatcher(self):
        client = TestClient(create_app(config={}))
        assert client.get("/channels").status_code == 503
        assert client.post("/approval-response", json={"requestId": "r1", "response": "allow"}).status_code == 503


class TestInput:

    def test_first_message_delivered_then_queued(self, test_client):
        first = test_client.post("/channels/tg:1/input", json={"text": "one"})
        second = test_client.post("/channels/tg:1/input", json={"text": "two"})

        assert first.json() == {"status": "delivered", "channel_id": "tg:1"}
        assert second.json()["status"] == "queued"
        assert second.json()["queue_position"] == 1
        assert len(process_for(test_client, "tg:1").lines) == 1

    def test_completion_drains_queue(self, test_client, events):
        test_client.post("/channels/tg:1/input", json={"text": "one"})
        test_client.post("/channels/tg:1/input", json={"text": "two"})

        feed(test_client, "tg:1", result_json("first answer", session_id="sess-1") + "\n" + done_line(test_client, "tg:1"))

        proc = process_for(test_client, "tg:1")
        assert '-p "two"' in proc.lines[-1]
        assert '--resume "sess-1"' in proc.lines[-1]
        assert events_of(events, EventType.TURN_COMPLETE)[0].data["result_text"] == "first answer"

        channel = test_client.get("/channels/tg:1").json()
        assert channel["busy"] is True
        assert channel["queue_length"] == 0
        assert channel["resume_id"] == "sess-1"

    def test_default_credential(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        proc = process_for(test_client, "tg:1")
        assert proc.env["CLAUDE_CODE_OAUTH_TOKEN"] == "tok-default"
        assert proc.lines[0].startswith('CLAUDE_CODE_OAUTH_TOKEN="tok-default"')

    def test_user_credential(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi", "user_id": "7"})
        assert process_for(test_client, "tg:1").lines[0].startswith('CLAUDE_CODE_OAUTH_TOKEN="tok-work"')

    def test_unknown_credential_alias(self, test_client):
        response = test_client.post("/channels/tg:1/input", json={"text": "hi", "credential_alias": "nope"})
        assert response.status_code == 400

    def test_spawn_failure(self, registry, notifier, relay_config):
        app = build_app(registry, notifier, relay_config, process_factory=FailingProcess)
        with TestClient(app) as client:
            response = client.post("/channels/tg:1/input", json={"text": "hi"})
        assert response.status_code == 500
        assert "not found" in response.json()["detail"]


class TestChannels:

    def test_list_and_get(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        channels = test_client.get("/channels").json()["channels"]
        assert [c["channel_id"] for c in channels] == ["tg:1"]
        assert channels[0]["has_process"] is True
        assert channels[0]["pid"] == 4242

    def test_unknown_channel(self, test_client):
        assert test_client.get("/channels/tg:404").status_code == 404
        assert test_client.post("/channels/tg:404/reset").status_code == 404
        assert test_client.post("/channels/tg:404/interrupt").status_code == 404

    def test_output(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        process_for(test_client, "tg:1").output_buffer.extend(["line 1\n", "line 2\n"])
        response = test_client.get("/channels/tg:1/output", params={"lines": 1})
        assert response.json()["output"] == "line 2\n"

    def test_usage(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        assert test_client.get("/channels/tg:1/usage").json()["usage"] is None

        feed(test_client, "tg:1", result_json("ok", input_tokens=100) + "\n")
        usage = test_client.get("/channels/tg:1/usage").json()["usage"]
        assert usage["total_context"] == 150

    def test_reset(self, test_client, resume_file):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        feed(test_client, "tg:1", result_json("ok", session_id="sess-1") + "\n" + done_line(test_client, "tg:1"))

        assert test_client.post("/channels/tg:1/reset").status_code == 200
        assert test_client.get("/channels/tg:1").json()["resume_id"] is None
        assert resume_file.read_text().strip() == "{}"

        test_client.post("/channels/tg:1/input", json={"text": "again"})
        assert "--resume" not in process_for(test_client, "tg:1").lines[-1]

    def test_interrupt(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "one"})
        test_client.post("/channels/tg:1/input", json={"text": "two"})

        assert test_client.post("/channels/tg:1/interrupt").status_code == 200
        channel = test_client.get("/channels/tg:1").json()
        assert channel["busy"] is False
        assert channel["queue_length"] == 0
        assert process_for(test_client, "tg:1").interrupts == 1

    def test_prompt_response(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        assert test_client.post("/channels/tg:1/prompt-response", json={"option_index": 0}).status_code == 409

        feed(test_client, "tg:1", "Proceed?\n(y/n)")
        assert test_client.get("/channels/tg:1").json()["pending_prompt"]["kind"] == "binary"
        assert test_client.post("/channels/tg:1/prompt-response", json={"option_index": 9}).status_code == 400

        response = test_client.post("/channels/tg:1/prompt-response", json={"option_index": 0})
        assert response.status_code == 200
        assert process_for(test_client, "tg:1").raw == ["y\r"]

    def test_model(self, test_client):
        response = test_client.put("/channels/tg:1/model", json={"model": "big-model"})
        assert response.json() == {"channel_id": "tg:1", "model": "big-model"}

        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        assert "--model big-model" in process_for(test_client, "tg:1").lines[0]

        response = test_client.delete("/channels/tg:1/model")
        assert response.json()["model"] == "test-model"

    def test_teardown(self, test_client):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})
        proc = process_for(test_client, "tg:1")

        assert test_client.delete("/channels/tg:1").status_code == 200
        assert proc.closed is True
        assert test_client.get("/channels/tg:1").status_code == 404


class TestApprovals:

    def test_malformed_response(self, test_client):
        assert test_client.post("/approval-response", content=b"not json").status_code == 400
        assert test_client.post("/approval-response", json={"response": "allow"}).status_code == 400
        assert test_client.post("/approval-response", json={"requestId": "r1"}).status_code == 400
        response = test_client.post("/approval-response", json={"requestId": "r1", "response": "maybe"})
        assert response.status_code == 400

    def test_unknown_request_ignored(self, test_client):
        response = test_client.post("/approval-response", json={"requestId": "r1", "approved": True})
        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "request_id": "r1", "decision": "allow"}

    def test_allowlisted_tool(self, test_client):
        test_client.app.state.registry.get_or_create("tg:1").tool_allowlist.add("Write")
        response = test_client.post("/approvals", json={
            "channel_id": "tg:1", "tool_name": "Write", "tool_input": {"path": "a.txt"},
        })
        assert response.json() == {"behavior": "allow", "decision": "allow", "updatedInput": {"path": "a.txt"}}

    def test_timeout_denies(self, test_client):
        response = test_client.post("/approvals", json={
            "channel_id": "tg:1", "tool_name": "Bash", "timeout_seconds": 0.05,
        })
        data = response.json()
        assert data["behavior"] == "deny"
        assert data["decision"] == "deny"
        assert "message" in data


class TestAgentMessages:

    def test_message_posted_and_result_text_suppressed(self, test_client, events):
        test_client.post("/channels/tg:1/input", json={"text": "hi"})

        # The agent posts through the channel before its result JSON is printed
        response = test_client.post("/messages", json={"channel_id": "tg:1", "type": "result", "content": "Done"})
        assert response.json()["status"] == "posted"

        feed(test_client, "tg:1", result_json("final text") + "\n")
        feed(test_client, "tg:1", done_line(test_client, "tg:1"))
        messages = events_of(events, EventType.AGENT_MESSAGE)
        assert messages[0].data["kind"] == "result"
        assert messages[0].data["content"] == "Done"
        assert events_of(events, EventType.TURN_COMPLETE)[0].data["result_text"] is None

    def test_next_turn_result_posted_again(self, test_client, events):
        test_client.post("/channels/tg:1/input", json={"text": "one"})
        test_client.post("/messages", json={"channel_id": "tg:1", "content": "working on it"})
        feed(test_client, "tg:1", result_json("first") + "\n" + done_line(test_client, "tg:1"))

        test_client.post("/channels/tg:1/input", json={"text": "two"})
        feed(test_client, "tg:1", result_json("second") + "\n" + done_line(test_client, "tg:1"))

        completions = events_of(events, EventType.TURN_COMPLETE)
        assert [c.data["result_text"] for c in completions] == [None, "second"]

    def test_file_upload(self, test_client, events):
        payload = base64.b64encode(b"a,b\n1,2\n").decode()
        response = test_client.post("/messages", json={
            "channel_id": "tg:1", "type": "file_upload", "filename": "data.csv", "content": payload,
        })
        assert response.status_code == 200

        message = events_of(events, EventType.AGENT_MESSAGE)[0]
        assert message.data["kind"] == "file_upload"
        assert message.data["file_data"] == b"a,b\n1,2\n"
        assert message.data["filename"] == "data.csv"
        assert message.data["content"] == ""

    def test_file_upload_requires_filename(self, test_client, events):
        response = test_client.post("/messages", json={
            "channel_id": "tg:1", "type": "file_upload", "content": base64.b64encode(b"x").decode(),
        })
        assert response.status_code == 400
        assert events_of(events, EventType.AGENT_MESSAGE) == []

    def test_file_upload_rejects_invalid_base64(self, test_client, events):
        response = test_client.post("/messages", json={
            "channel_id": "tg:1", "type": "file_upload", "filename": "a.txt", "content": "not base64!",
        })
        assert response.status_code == 400
        assert events_of(events, EventType.AGENT_MESSAGE) == []


@pytest.mark.asyncio
async def test_approval_round_trip(registry, notifier, relay_config, events):
    """An approval request blocks until the decision arrives on /approval-response."""
    app = build_app(registry, notifier, relay_config)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://relay") as client:
        pending = asyncio.create_task(client.post("/approvals", json={
            "channel_id": "tg:1", "tool_name": "Write", "request_id": "r1", "tool_input": {"path": "a"},
        }))
        await wait_until(lambda: app.state.coordinator.is_pending("r1"), attempts=2000)

        request_events = events_of(events, EventType.APPROVAL_REQUEST)
        assert request_events[0].data["request_id"] == "r1"

        decision = await client.post("/approval-response", json={"requestId": "r1", "response": "allow_session"})
        assert decision.json()["status"] == "resolved"

        response = await pending
        assert response.json()["behavior"] == "allow"
        assert response.json()["updatedInput"] == {"path": "a"}
        assert "Write" in registry.get("tg:1").tool_allowlist

        duplicate = await client.post("/approval-response", json={"requestId": "r1", "response": "deny"})
        assert duplicate.json()["status"] == "ignored"
