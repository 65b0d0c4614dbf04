"""
End-to-End Tests for the GraphGullible API

Drives a participant through the whole protocol over HTTP:
- Email gate -> pre-survey -> tutorial -> training -> post-survey
- Transcript snapshots stored per (scenario, participant)
- Error mapping for locked steps and invalid input

The LLM is replaced by a generator that always advances.
"""

import pytest
import sys
import os

from fastapi.testclient import TestClient

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "graph_gullible", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

import main
from graph_gullible.conversation_state import BotResponse, Sender
from graph_gullible.persistence import PersistenceGateway
from graph_gullible.scenarios import SCENARIOS
from graph_gullible.session_store import SessionIdStore


class AlwaysAdvance:
    """Stand-in for the LLM: every turn succeeds."""

    async def generate(self, user_text, history, scenario, step, mistake_count=0, tutorial_mode=False):
        return BotResponse(sender=Sender.MODEL, text=f"[{scenario.id}:{int(step)}] ok", should_advance=True)


EMAIL = "participant@example.com"
HEADERS = {"X-Participant-Email": EMAIL}


@pytest.fixture
def gateway(monkeypatch):
    """Fresh backend singletons for each test."""
    monkeypatch.setenv("PRE_SURVEY_CODE", "START123")
    monkeypatch.setenv("POST_SURVEY_CODE", "FINISH123")
    gateway = PersistenceGateway()
    monkeypatch.setattr(main, "_generator", AlwaysAdvance())
    monkeypatch.setattr(main, "_gateway", gateway)
    monkeypatch.setattr(main, "_session_store", SessionIdStore(persist=False))
    main._flows.clear()
    yield gateway
    main._flows.clear()


def finish_scenario(client):
    """Send the three participant turns of one scenario."""
    state = None
    for text in ("You're wrong", "The axis is cut", "Start the axis at zero"):
        response = client.post("/api/chat/messages", json={"text": text}, headers=HEADERS)
        assert response.status_code == 200
        state = response.json()
    assert state["chat"]["is_completed"] is True
    return state


class TestFullStudyFlow:

    def test_participant_completes_protocol(self, gateway):
        with TestClient(main.app) as client:
            response = client.post("/api/participants", json={"email": EMAIL})
            assert response.status_code == 200
            assert response.json()["group"] in ("A", "B")
            assert response.json()["view"] == "dashboard"

            dashboard = client.get("/api/dashboard", headers=HEADERS).json()
            assert [s["locked"] for s in dashboard["steps"]] == [False, True, True]

            response = client.post("/api/surveys/pre/verify", json={"code": "start123"}, headers=HEADERS)
            assert response.status_code == 200
            assert response.json()["progress"]["pre_survey"] is True

            state = client.post("/api/chat/enter", headers=HEADERS).json()
            assert state["flow"]["overlay"] == "intro"

            state = client.post("/api/chat/start-tutorial", headers=HEADERS).json()
            assert state["chat"]["scenario_id"] == 101
            assert state["chat"]["step"] == "USER_CORRECTS"
            assert state["chat"]["input_mode"] == "scripted"

            finish_scenario(client)
            response = client.post("/api/chat/next", headers=HEADERS).json()
            assert response["outcome"] == "advanced"
            assert response["chat"]["scenario_id"] == 102

            finish_scenario(client)
            response = client.post("/api/chat/next", headers=HEADERS).json()
            assert response["outcome"] == "show_transition"
            assert response["flow"]["overlay"] == "transition"

            state = client.post("/api/chat/start-training", headers=HEADERS).json()
            assert state["chat"]["scenario_id"] == 1
            assert state["chat"]["input_mode"] == "free_text"
            assert state["chat"]["training_progress"] == 0

            outcome = None
            for _ in range(len(SCENARIOS) - 2):
                finish_scenario(client)
                outcome = client.post("/api/chat/next", headers=HEADERS).json()["outcome"]
            assert outcome == "all_finished"

            response = client.post("/api/chat/complete", headers=HEADERS)
            assert response.status_code == 200
            assert response.json()["progress"]["intervention"] is True

            response = client.post("/api/surveys/post/verify", json={"code": "FINISH123"}, headers=HEADERS)
            assert response.json()["progress"] == {"pre_survey": True, "intervention": True, "post_survey": True}

        # Shutdown drained the scheduled writes
        assert len(gateway._in_memory_chats) == len(SCENARIOS)
        for row in gateway._in_memory_chats.values():
            assert row["user_email"] == EMAIL
            assert len(row["messages"]) == 7
        assert gateway.get_user_group(EMAIL) in ("A", "B")


class TestErrorMapping:

    def test_missing_identity(self, gateway):
        with TestClient(main.app) as client:
            assert client.get("/api/dashboard").status_code == 401
            assert client.get("/api/dashboard", headers={"X-Participant-Email": "nobody"}).status_code == 401
            assert client.get("/api/dashboard", headers=HEADERS).status_code == 404

    def test_invalid_email_rejected(self, gateway):
        with TestClient(main.app) as client:
            assert client.post("/api/participants", json={"email": "not-an-email"}).status_code == 400

    def test_locked_steps(self, gateway):
        with TestClient(main.app) as client:
            client.post("/api/participants", json={"email": EMAIL})

            assert client.post("/api/chat/enter", headers=HEADERS).status_code == 400
            response = client.post("/api/surveys/pre/verify", json={"code": "WRONG"}, headers=HEADERS)
            assert response.status_code == 400
            assert response.json()["detail"] == "Invalid code. Please check the end of the survey."
            assert client.post("/api/surveys/post/verify", json={"code": "FINISH123"}, headers=HEADERS).status_code == 400

    def test_conversation_conflicts(self, gateway):
        with TestClient(main.app) as client:
            client.post("/api/participants", json={"email": EMAIL})
            client.post("/api/surveys/pre/verify", json={"code": "START123"}, headers=HEADERS)
            client.post("/api/chat/enter", headers=HEADERS)
            client.post("/api/chat/start-training", headers=HEADERS)

            assert client.post("/api/chat/messages", json={"text": "   "}, headers=HEADERS).status_code == 400
            assert client.post("/api/chat/next", headers=HEADERS).status_code == 409

            finish_scenario(client)
            response = client.post("/api/chat/messages", json={"text": "more"}, headers=HEADERS)
            assert response.status_code == 409


class TestDirectSaves:

    def test_save_chat(self, gateway):
        with TestClient(main.app) as client:
            response = client.post("/api/save-chat", json={
                "session_id": "sid-1",
                "user_email": EMAIL,
                "scenario_id": 3,
                "scenario_title": "Quarterly Sales",
                "messages": [{"role": "model", "text": "Sales are flat"}],
            })
            assert response.status_code == 200
            assert response.json() == {"success": True, "sid": "sid-1"}

            response = client.post("/api/save-chat", json={"session_id": "sid-2", "user_email": EMAIL})
            assert response.status_code == 400

        assert gateway.get_chat_session("sid-1")["scenario_title"] == "Quarterly Sales"
        assert gateway.get_chat_session("sid-2") is None

    def test_save_user_group(self, gateway):
        with TestClient(main.app) as client:
            assert client.post("/api/save-user-group", json={"email": EMAIL}).status_code == 400
            assert client.post("/api/save-user-group", json={"email": EMAIL, "group": "B"}).status_code == 200

        assert gateway.get_user_group(EMAIL) == "B"

    def test_scenarios_endpoint(self, gateway):
        with TestClient(main.app) as client:
            scenarios = client.get("/api/scenarios").json()["scenarios"]
        assert [s["id"] for s in scenarios] == [s.id for s in SCENARIOS]
