"""
Response Generator

Builds the per-turn prompt for the naive "GraphGullible" bot, calls the LLM
with a strict JSON schema and validates the reply into a BotResponse.

The guide persona only exists in training mode. Tutorial mode removes it from
the schema enum and rejects it again locally, so a misbehaving model can never
put a guide message into a tutorial transcript.
"""

import os
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from openai import AsyncOpenAI
from pydantic import ValidationError

from graph_gullible.conversation_state import (
    BotResponse,
    ConversationStep,
    Message,
    Role,
    Sender,
)
from graph_gullible.errors import ResponseGeneratorError
from graph_gullible.scenarios import Scenario

load_dotenv()

logger = logging.getLogger(__name__)

START_PROMPT = "Start the simulation. Look at the graph."
GUIDE_HISTORY_PREFIX = "[PREVIOUS SUPERVISOR INTERVENTION]: "
ESCALATION_THRESHOLD = 2

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def allowed_senders(tutorial_mode: bool) -> List[str]:
    if tutorial_mode:
        return [Sender.MODEL.value]
    return [Sender.MODEL.value, Sender.GUIDE.value]


def response_schema(tutorial_mode: bool) -> Dict[str, Any]:
    """OpenAI structured-output format for one bot turn."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "bot_response",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "sender": {"type": "string", "enum": allowed_senders(tutorial_mode)},
                    "text": {"type": "string"},
                    "shouldAdvance": {"type": "boolean"},
                },
                "required": ["sender", "text", "shouldAdvance"],
                "additionalProperties": False,
            },
        },
    }


def build_history(user_text: str, history: Sequence[Message]) -> List[Dict[str, str]]:
    """Map the transcript onto chat-completion turns."""
    turns: List[Dict[str, str]] = []
    for msg in history:
        if msg.role == Role.GUIDE:
            turns.append({"role": "assistant", "content": f"{GUIDE_HISTORY_PREFIX}{msg.text}"})
        elif msg.role == Role.MODEL:
            turns.append({"role": "assistant", "content": msg.text})
        else:
            turns.append({"role": "user", "content": msg.text})

    if user_text:
        turns.append({"role": "user", "content": user_text})
    elif not turns:
        turns.append({"role": "user", "content": START_PROMPT})
    return turns


def step_instruction(step: ConversationStep, tutorial_mode: bool) -> str:
    """Per-step task for the bot."""
    if step == ConversationStep.INIT_MISLED:
        return """
TASK: Act as the naive "model".
ACTION: Look at the graph and make a confidently WRONG interpretation based strictly on the TRICK below.
CONSTRAINT: Be happy about the wrong conclusion.
RESULT: shouldAdvance = true, sender = "model"."""

    if step == ConversationStep.USER_CORRECTS:
        if tutorial_mode:
            failure = (
                'Stay confident in your wrong belief. Text: "I\'m pretty sure I\'m right! Look at the graph! '
                'Why would I be wrong?". sender = "model".'
            )
        else:
            failure = (
                'Return sender = "guide". Text: "The bot is misinterpreting the graph. You need to explicitly '
                'tell it that it is wrong."'
            )
        return f"""
CONTEXT: You just made a misleading claim. The user is expected to correct you now.

CHECK USER INPUT:
1. Does the user say you are wrong, misled, incorrect, or that the graph is deceptive?
2. Does the user disagree with your conclusion?

IF YES:
   - Act surprised and apologize.
   - Ask "What specifically tricked me?" or "Which part should I look at?".
   - Play dumb. Do NOT correct yourself yet.
   - RESULT: shouldAdvance = true, sender = "model".

IF NO (user agrees, changes topic, or is vague):
   - {failure}
   - RESULT: shouldAdvance = false."""

    if step == ConversationStep.USER_EXPLAINS_FEATURE:
        return """
TASK: The user pointed out the visual feature.
ACTION: Acknowledge the feature.
CRITICAL: Act confused about the MEANING. Ask: "I see that, but how does that make my interpretation wrong?"
CONSTRAINT: Do NOT correct your interpretation yet.
RESULT: shouldAdvance = true."""

    if step == ConversationStep.USER_SUGGESTS_FIX:
        return """
TASK: The user explained the impact.
ACTION: Have an "Aha!" moment.
CRITICAL: Thank the user and restate the correct interpretation.
RESULT: shouldAdvance = true."""

    return "The conversation is complete. Thank the user."


def build_system_prompt(
    scenario: Scenario,
    step: ConversationStep,
    mistake_count: int = 0,
    tutorial_mode: bool = False,
) -> str:
    """Build the system instruction for the current turn."""
    allow_guide = not tutorial_mode

    escalation = ""
    if allow_guide and mistake_count >= ESCALATION_THRESHOLD:
        escalation = (
            f"\nIMPORTANT: The user has failed to explain this correctly {mistake_count} times. "
            "STOP BEING VAGUE. As the 'guide', explicitly TELL the user the answer or the exact keyword "
            "they need to type. Do not just hint. Keep it under 35 words.\n"
        )

    mode = "TUTORIAL (NO GUIDE ALLOWED)" if tutorial_mode else "TRAINING (GUIDE ENABLED)"

    return f"""Role: Game engine for "GraphGullible", a naive chatbot that is learning to read misleading charts.

SCENARIO: {scenario.title}. {scenario.description}
TRICK: {scenario.ai_context}

CURRENT CONVERSATION STEP ID: {int(step)}
{step_instruction(step, tutorial_mode)}
{escalation}
GLOBAL RULES:
1. MODE: {mode}.
2. In tutorial mode, sender MUST be "model".
3. In training mode, if the user fails to correct the bot in step 1, sender MUST be "guide".
4. Never mention step numbers in the text.

STYLE:
1. Maximum 2 sentences, 35 words total.
2. Be snappy and naive.

Return RAW JSON only."""


def parse_bot_response(content: Optional[str], tutorial_mode: bool) -> BotResponse:
    """Validate raw model output. Anything off-contract raises ResponseGeneratorError."""
    if not content or not content.strip():
        raise ResponseGeneratorError("Empty response")

    payload = _CODE_FENCE.sub("", content.strip())
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ResponseGeneratorError(f"Response is not valid JSON: {e}") from e

    try:
        response = BotResponse.model_validate(data)
    except ValidationError as e:
        raise ResponseGeneratorError(f"Response does not match schema: {e}") from e

    if tutorial_mode and response.sender == Sender.GUIDE:
        raise ResponseGeneratorError("Guide sender is not allowed in tutorial mode")

    return response


class ResponseGenerator:
    """
    Produces one bot turn per call.

    Raises ResponseGeneratorError on any failure; the caller decides how to
    recover.
    """

    def __init__(
        self,
        llm_client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.max_tokens = max_tokens or int(os.getenv("OPENAI_MAX_TOKENS", "400"))
        self.llm_client = llm_client

        if self.llm_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if api_key:
                self.llm_client = AsyncOpenAI(api_key=api_key)
            else:
                logger.warning("⚠️ [ResponseGenerator] OPENAI_API_KEY not set - every turn will fall back")

    async def generate(
        self,
        user_text: str,
        history: Sequence[Message],
        scenario: Scenario,
        step: ConversationStep,
        mistake_count: int = 0,
        tutorial_mode: bool = False,
    ) -> BotResponse:
        """
        Generate the bot's next turn.

        Args:
            user_text: Latest participant message ("" when starting a scenario)
            history: Transcript so far, oldest first
            scenario: Active scenario
            step: Current conversation step
            mistake_count: Guide interventions since the last success
            tutorial_mode: Disables the guide persona

        Returns:
            Validated BotResponse
        """
        if self.llm_client is None:
            raise ResponseGeneratorError("No LLM client configured")

        messages = [{"role": "system", "content": build_system_prompt(scenario, step, mistake_count, tutorial_mode)}]
        messages.extend(build_history(user_text, history))

        try:
            completion = await self.llm_client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format=response_schema(tutorial_mode),
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            raise ResponseGeneratorError(f"LLM call failed: {e}") from e

        if not completion.choices:
            raise ResponseGeneratorError("LLM returned no choices")

        content = completion.choices[0].message.content
        response = parse_bot_response(content, tutorial_mode)
        logger.debug(
            f"🤖 [ResponseGenerator] step={step.name} sender={response.sender.value} "
            f"advance={response.should_advance}"
        )
        return response
