"""
Unit Tests for Chat Endpoints

Tests message posting, stream cancellation, SSE delivery and proposal
confirmation under /api/v1/chats.
"""

import json
import time

import pytest

from dbcopilot.connectors import QueryError, QueryResult, SchemaError
from dbcopilot.errors import BacklogUnavailable
from dbcopilot.llm.models import LLMStreamChunk, LLMToolCall
from dbcopilot.streaming.delivery import DeliveryHub

USER = {"X-User-ID": "user-1"}
OTHER_USER = {"X-User-ID": "user-2"}


def _wait_for_terminal(registry, chat_id, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        session = registry.get(chat_id)
        if session is not None and session.state.is_terminal:
            return session
        time.sleep(0.01)
    raise AssertionError(f"Stream for chat {chat_id} did not finish")


def _parse_sse(text):
    events = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        fields = {}
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            key, _, value = line.partition(":")
            fields[key] = value.lstrip(" ")
        if "event" in fields:
            events.append(fields)
    return events


def _post_and_finish(client, components, chat):
    response = client.post(
        f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "List users"}, headers=USER
    )
    assert response.status_code == 202
    _wait_for_terminal(components["registry"], chat.chat_id)
    return response.json()


def _proposal_id(client, chat):
    messages = client.get(f"/api/v1/chats/{chat.chat_id}/messages", headers=USER).json()
    return messages[-1]["proposals"][0]["proposal_id"]


class TestAuthorization:
    """Every chat route is scoped to the caller."""

    def test_missing_user_header(self, client, chat):
        response = client.post(f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "hi"})

        assert response.status_code == 401

    def test_other_users_chat_is_not_found(self, client, chat):
        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "hi"}, headers=OTHER_USER
        )

        assert response.status_code == 404
        assert response.json()["error"] == "chat_not_found"

    def test_unknown_chat(self, client):
        response = client.get("/api/v1/chats/nope/messages", headers=USER)

        assert response.status_code == 404


class TestCreateMessage:
    """Test POST /chats/{chat_id}/messages."""

    def test_accepted_and_persisted(self, client, components, chat):
        body = _post_and_finish(client, components, chat)

        assert body["message"]["role"] == "user"
        assert body["message"]["content"] == "List users"
        assert body["session_id"]

        messages = client.get(f"/api/v1/chats/{chat.chat_id}/messages", headers=USER).json()
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["content"] == "Here is a query. "
        proposal = messages[1]["proposals"][0]
        assert proposal["query"] == "SELECT id, name FROM users"
        assert proposal["status"] == "proposed"

    def test_empty_content_rejected(self, client, chat):
        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/messages", json={"content": ""}, headers=USER
        )

        assert response.status_code == 422

    def test_auto_execute_chat_runs_reads(self, client, components, auto_chat, fake_handle):
        _post_and_finish(client, components, auto_chat)

        messages = client.get(f"/api/v1/chats/{auto_chat.chat_id}/messages", headers=USER).json()
        proposal = messages[-1]["proposals"][0]
        assert proposal["status"] == "auto-executed"
        assert proposal["result"]["row_count"] == 2
        assert fake_handle.executed == ["SELECT id, name FROM users"]


class TestConcurrentStreams:
    """A chat has at most one active stream."""

    @pytest.fixture
    def provider(self, scripted_provider, proposal_chunks):
        return scripted_provider(proposal_chunks(), hold=True)

    def test_second_message_conflicts_then_cancel(self, client, components, chat):
        first = client.post(
            f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "one"}, headers=USER
        )
        second = client.post(
            f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "two"}, headers=USER
        )

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["error"] == "already_streaming"

        cancel = client.post(f"/api/v1/chats/{chat.chat_id}/stream/cancel", headers=USER)
        assert cancel.status_code == 200
        assert cancel.json() == {"cancelled": True, "session_id": first.json()["session_id"]}

        session = _wait_for_terminal(components["registry"], chat.chat_id)
        assert session.state.value == "cancelled"

        messages = client.get(f"/api/v1/chats/{chat.chat_id}/messages", headers=USER).json()
        assert messages[-1]["is_partial"] is True

    def test_cancel_without_stream(self, client, chat):
        response = client.post(f"/api/v1/chats/{chat.chat_id}/stream/cancel", headers=USER)

        assert response.status_code == 409
        assert response.json()["error"] == "no_active_stream"


class TestStream:
    """Test GET /chats/{chat_id}/stream."""

    def test_no_stream_to_follow(self, client, chat):
        response = client.get(f"/api/v1/chats/{chat.chat_id}/stream", headers=USER)

        assert response.status_code == 409
        assert response.json()["error"] == "no_active_stream"

    def test_replays_events_in_order(self, client, components, chat):
        _post_and_finish(client, components, chat)

        response = client.get(
            f"/api/v1/chats/{chat.chat_id}/stream", params={"afterSequence": 1}, headers=USER
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _parse_sse(response.text)
        assert [e["event"] for e in events] == ["query_proposed", "stream_completed"]
        assert [int(e["id"]) for e in events] == [2, 3]
        payload = json.loads(events[0]["data"])
        assert payload["data"]["proposal"]["query"] == "SELECT id, name FROM users"

    def test_evicted_backlog_is_gone(self, client, components, chat, monkeypatch):
        _post_and_finish(client, components, chat)

        def evicted(self, chat_id, after=0):
            raise BacklogUnavailable("Events after 0 are no longer buffered")

        monkeypatch.setattr(DeliveryHub, "ensure_available", evicted)
        response = client.get(f"/api/v1/chats/{chat.chat_id}/stream", headers=USER)

        assert response.status_code == 410
        assert response.json()["error"] == "backlog_unavailable"


class TestProposals:
    """Test confirming and rejecting proposals."""

    def test_execute_proposal(self, client, components, chat, fake_handle):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "user-executed"
        assert body["result"]["columns"] == ["id", "name"]
        assert fake_handle.executed == ["SELECT id, name FROM users"]

    def test_execute_twice_conflicts(self, client, components, chat):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)
        url = f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute"

        client.post(url, headers=USER)
        response = client.post(url, headers=USER)

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_proposal_transition"

    def test_engine_failure_reported_in_body(self, client, components, chat, fake_handle):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)
        fake_handle.error = QueryError('relation "users" does not exist')

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failed"
        assert body["error"]["message"] == 'relation "users" does not exist'

    def test_reject_then_execute(self, client, components, chat, fake_handle):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        rejected = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/reject", headers=USER
        )
        executed = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER
        )

        assert rejected.json()["status"] == "rejected"
        assert executed.status_code == 409
        assert fake_handle.executed == []

    def test_binary_cells_returned_as_base64(self, client, components, chat, fake_handle):
        fake_handle.result = QueryResult(
            rows=[{"id": 1, "token": b"\xff\x00"}], columns=["id", "token"]
        )
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER
        )

        assert response.status_code == 200
        assert response.json()["result"]["rows"] == [{"id": 1, "token": "/wA="}]

    def test_edit_proposal(self, client, components, chat):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/edit",
            json={"query": "DELETE FROM users WHERE id = 7"},
            headers=USER,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["query"] == "DELETE FROM users WHERE id = 7"
        assert body["classification"] == "write"
        assert body["is_edited"] is True
        assert body["original_query"] == "SELECT id, name FROM users"

    def test_edit_rejected_proposal_conflicts(self, client, components, chat):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)
        client.post(f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/reject", headers=USER)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/edit",
            json={"query": "SELECT 1"},
            headers=USER,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_proposal_transition"

    def test_cancel_without_execution(self, client, components, chat):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/cancel", headers=USER
        )

        assert response.status_code == 409
        assert response.json()["error"] == "no_active_execution"

    def test_rollback_of_read_unavailable(self, client, components, chat):
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)
        client.post(f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/rollback", headers=USER
        )

        assert response.status_code == 409
        assert response.json()["error"] == "rollback_unavailable"

    def test_unknown_proposal(self, client, chat):
        response = client.post(f"/api/v1/chats/{chat.chat_id}/queries/nope/execute", headers=USER)

        assert response.status_code == 404
        assert response.json()["error"] == "proposal_not_found"


class TestWriteConfirmation:
    """Writes are only ever run on the user's confirmation."""

    @pytest.fixture
    def provider(self, scripted_provider):
        return scripted_provider(
            [
                LLMStreamChunk(
                    tool_call=LLMToolCall(
                        name="propose_query",
                        arguments={"query": "DELETE FROM users WHERE inactive"},
                    )
                ),
                LLMStreamChunk(finish_reason="stop"),
            ]
        )

    def test_auto_chat_leaves_write_proposed(self, client, components, auto_chat, fake_handle):
        _post_and_finish(client, components, auto_chat)

        messages = client.get(f"/api/v1/chats/{auto_chat.chat_id}/messages", headers=USER).json()
        proposal = messages[-1]["proposals"][0]
        assert proposal["classification"] == "write"
        assert proposal["status"] == "proposed"
        assert fake_handle.executed == []

    def test_user_confirms_write(self, client, components, chat, fake_handle):
        fake_handle.result = QueryResult(affected_rows=5)
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)

        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}/execute", headers=USER
        )

        assert response.json()["status"] == "user-executed"
        assert response.json()["result"]["affected_rows"] == 5
        assert fake_handle.executed == ["DELETE FROM users WHERE inactive"]


class TestWithoutProvider:
    """Posting needs an AI provider; proposals do not."""

    @pytest.fixture
    def provider(self):
        return None

    def test_post_message_unavailable(self, client, chat):
        response = client.post(
            f"/api/v1/chats/{chat.chat_id}/messages", json={"content": "hi"}, headers=USER
        )

        assert response.status_code == 503
        assert response.json()["error"] == "ai_service_unavailable"


class TestRollback:
    """Executed writes can be undone with the AI's rollback statement."""

    @pytest.fixture
    def provider(self, scripted_provider):
        return scripted_provider(
            [
                LLMStreamChunk(
                    tool_call=LLMToolCall(
                        name="propose_query",
                        arguments={
                            "query": "UPDATE users SET name = 'Eve' WHERE id = 1",
                            "rollback_query": "UPDATE users SET name = 'Ada' WHERE id = 1",
                        },
                    )
                ),
                LLMStreamChunk(finish_reason="stop"),
            ]
        )

    def test_execute_then_roll_back(self, client, components, chat, fake_handle):
        fake_handle.result = QueryResult(affected_rows=1)
        _post_and_finish(client, components, chat)
        proposal_id = _proposal_id(client, chat)
        url = f"/api/v1/chats/{chat.chat_id}/queries/{proposal_id}"

        client.post(f"{url}/execute", headers=USER)
        response = client.post(f"{url}/rollback", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert body["rolled_back"] is True
        assert body["rollback_result"]["affected_rows"] == 1
        assert fake_handle.executed == [
            "UPDATE users SET name = 'Eve' WHERE id = 1",
            "UPDATE users SET name = 'Ada' WHERE id = 1",
        ]

        again = client.post(f"{url}/rollback", headers=USER)
        assert again.status_code == 409
        assert again.json()["error"] == "rollback_unavailable"


class TestSchema:
    """Test GET /chats/{chat_id}/schema and its refresh."""

    def test_schema_is_cached(self, client, chat, fake_handle):
        first = client.get(f"/api/v1/chats/{chat.chat_id}/schema", headers=USER)
        second = client.get(f"/api/v1/chats/{chat.chat_id}/schema", headers=USER)

        assert first.status_code == 200
        body = first.json()
        assert body["connection_id"] == chat.connection_id
        assert body["table_count"] == 1
        table = body["tables"][0]
        assert table["table_name"] == "users"
        assert [c["name"] for c in table["columns"]] == ["id", "name"]
        assert second.json()["fetched_at"] == body["fetched_at"]
        assert fake_handle.schema_calls == 1

    def test_refresh_introspects_again(self, client, chat, fake_handle):
        client.get(f"/api/v1/chats/{chat.chat_id}/schema", headers=USER)

        response = client.post(f"/api/v1/chats/{chat.chat_id}/schema/refresh", headers=USER)

        assert response.status_code == 200
        assert fake_handle.schema_calls == 2

    def test_introspection_failure(self, client, chat, fake_handle):
        fake_handle.schema_error = SchemaError("permission denied for schema public")

        response = client.get(f"/api/v1/chats/{chat.chat_id}/schema", headers=USER)

        assert response.status_code == 422
        assert response.json()["error"] == "engine_error"

    def test_other_users_chat(self, client, chat):
        response = client.get(f"/api/v1/chats/{chat.chat_id}/schema", headers=OTHER_USER)

        assert response.status_code == 404
