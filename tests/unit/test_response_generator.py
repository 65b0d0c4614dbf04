"""
Unit Tests for Response Generator

Tests the structured-output schema, history mapping, prompt escalation and
reply validation. The OpenAI client is replaced by a small fake.
"""

import pytest
import json
import sys
import os
from types import SimpleNamespace

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "graph_gullible", "src"))

from graph_gullible.conversation_state import ConversationStep, Message, Role, Sender
from graph_gullible.errors import ResponseGeneratorError
from graph_gullible.response_generator import (
    GUIDE_HISTORY_PREFIX,
    START_PROMPT,
    ResponseGenerator,
    build_history,
    build_system_prompt,
    parse_bot_response,
    response_schema,
)
from graph_gullible.scenarios import SCENARIOS


class FakeCompletions:
    def __init__(self, content=None, error=None, choices=True):
        self.content = content
        self.error = error
        self.choices = choices
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        if not self.choices:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


def fake_client(**kwargs):
    completions = FakeCompletions(**kwargs)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


TUTORIAL = SCENARIOS[0]
TRAINING = SCENARIOS[2]


class TestResponseSchema:

    def test_tutorial_schema_excludes_guide(self):
        schema = response_schema(tutorial_mode=True)["json_schema"]["schema"]
        assert schema["properties"]["sender"]["enum"] == ["model"]

    def test_training_schema_allows_guide(self):
        schema = response_schema(tutorial_mode=False)["json_schema"]["schema"]
        assert schema["properties"]["sender"]["enum"] == ["model", "guide"]

    def test_schema_is_strict(self):
        fmt = response_schema(tutorial_mode=False)
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["strict"] is True
        schema = fmt["json_schema"]["schema"]
        assert set(schema["required"]) == {"sender", "text", "shouldAdvance"}
        assert schema["additionalProperties"] is False


class TestBuildHistory:

    def test_empty_history_uses_start_prompt(self):
        assert build_history("", []) == [{"role": "user", "content": START_PROMPT}]

    def test_roles_are_mapped(self):
        history = [
            Message(Role.MODEL, "Sales tripled!"),
            Message(Role.USER, "Looks fine"),
            Message(Role.GUIDE, "Tell it it's wrong"),
            Message(Role.USER, "You're wrong"),
        ]

        turns = build_history("You're wrong", history)

        assert turns[0] == {"role": "assistant", "content": "Sales tripled!"}
        assert turns[1] == {"role": "user", "content": "Looks fine"}
        assert turns[2] == {"role": "assistant", "content": f"{GUIDE_HISTORY_PREFIX}Tell it it's wrong"}
        assert turns[-1] == {"role": "user", "content": "You're wrong"}
        assert all(t["role"] in ("user", "assistant") for t in turns)


class TestSystemPrompt:

    def test_contains_scenario_and_step(self):
        prompt = build_system_prompt(TRAINING, ConversationStep.USER_CORRECTS)
        assert TRAINING.title in prompt
        assert TRAINING.ai_context in prompt
        assert "CURRENT CONVERSATION STEP ID: 1" in prompt
        assert "TRAINING (GUIDE ENABLED)" in prompt

    def test_escalation_after_two_mistakes(self):
        calm = build_system_prompt(TRAINING, ConversationStep.USER_CORRECTS, mistake_count=1)
        escalated = build_system_prompt(TRAINING, ConversationStep.USER_CORRECTS, mistake_count=2)
        assert "STOP BEING VAGUE" not in calm
        assert "STOP BEING VAGUE" in escalated
        assert "2 times" in escalated

    def test_no_escalation_in_tutorial(self):
        prompt = build_system_prompt(TUTORIAL, ConversationStep.USER_CORRECTS, mistake_count=5, tutorial_mode=True)
        assert "STOP BEING VAGUE" not in prompt
        assert "TUTORIAL (NO GUIDE ALLOWED)" in prompt


class TestParseBotResponse:

    def test_valid_payload(self):
        response = parse_bot_response('{"sender": "guide", "text": "Say it", "shouldAdvance": false}', False)
        assert response.sender == Sender.GUIDE
        assert response.should_advance is False

    def test_code_fence_is_stripped(self):
        content = '```json\n{"sender": "model", "text": "Hi", "shouldAdvance": true}\n```'
        assert parse_bot_response(content, True).text == "Hi"

    @pytest.mark.parametrize("content", [
        None,
        "   ",
        "not json",
        '{"sender": "model", "text": "missing flag"}',
        '{"sender": "narrator", "text": "x", "shouldAdvance": true}',
    ])
    def test_invalid_payloads_raise(self, content):
        with pytest.raises(ResponseGeneratorError):
            parse_bot_response(content, False)

    def test_guide_rejected_in_tutorial(self):
        with pytest.raises(ResponseGeneratorError):
            parse_bot_response('{"sender": "guide", "text": "x", "shouldAdvance": false}', True)


class TestResponseGenerator:

    @pytest.mark.asyncio
    async def test_generate_sends_schema_and_prompt(self):
        payload = {"sender": "model", "text": "Tax tripled!", "shouldAdvance": True}
        client, completions = fake_client(content=json.dumps(payload))
        generator = ResponseGenerator(llm_client=client, model="test-model", max_tokens=100)

        response = await generator.generate("", [], TRAINING, ConversationStep.INIT_MISLED)

        assert response.text == "Tax tripled!"
        assert response.should_advance is True
        assert completions.kwargs["model"] == "test-model"
        assert completions.kwargs["max_tokens"] == 100
        assert completions.kwargs["response_format"] == response_schema(False)
        messages = completions.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "user", "content": START_PROMPT}

    @pytest.mark.asyncio
    async def test_tutorial_mode_uses_restricted_schema(self):
        client, completions = fake_client(content='{"sender": "model", "text": "ok", "shouldAdvance": true}')
        generator = ResponseGenerator(llm_client=client)

        await generator.generate("", [], TUTORIAL, ConversationStep.INIT_MISLED, tutorial_mode=True)

        enum = completions.kwargs["response_format"]["json_schema"]["schema"]["properties"]["sender"]["enum"]
        assert enum == ["model"]

    @pytest.mark.asyncio
    async def test_api_error_is_wrapped(self):
        client, _ = fake_client(error=RuntimeError("rate limited"))
        generator = ResponseGenerator(llm_client=client)

        with pytest.raises(ResponseGeneratorError, match="rate limited"):
            await generator.generate("hi", [], TRAINING, ConversationStep.USER_CORRECTS)

    @pytest.mark.asyncio
    async def test_empty_choices_raise(self):
        client, _ = fake_client(choices=False)
        generator = ResponseGenerator(llm_client=client)

        with pytest.raises(ResponseGeneratorError):
            await generator.generate("hi", [], TRAINING, ConversationStep.USER_CORRECTS)

    @pytest.mark.asyncio
    async def test_missing_api_key_raises_on_generate(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        generator = ResponseGenerator()

        assert generator.llm_client is None
        with pytest.raises(ResponseGeneratorError):
            await generator.generate("", [], TRAINING, ConversationStep.INIT_MISLED)
