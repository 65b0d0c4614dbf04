"""
Conversation Controller

Drives one participant through the scenario catalog:
- INIT_MISLED -> USER_CORRECTS -> USER_EXPLAINS_FEATURE -> USER_SUGGESTS_FIX -> COMPLETED
- guide interventions count mistakes, any success resets the count
- generator failures degrade to a fixed fallback message and a manual retry

Every generator call captures a request sequence number when issued. When it
resolves, it may only touch the transcript, step or loading flag if no newer
call has been issued since; otherwise its result is dropped.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from graph_gullible.conversation_state import (
    BotResponse,
    ConversationSession,
    ConversationStep,
    Message,
    Role,
    Sender,
    potential_next_step,
)
from graph_gullible.errors import ConversationStateError, ResponseGeneratorError
from graph_gullible.persistence import PersistenceGateway
from graph_gullible.scenarios import (
    SCENARIOS,
    FreeTextInput,
    Scenario,
    ScriptedInput,
    StepInput,
    first_training_index,
    training_progress,
)
from graph_gullible.session_store import SessionIdStore

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "I'm having a little trouble thinking straight. Can you click that Retry button?"
FALLBACK_MARKER = "trouble thinking straight"


class BotResponder(Protocol):
    async def generate(
        self,
        user_text: str,
        history: Sequence[Message],
        scenario: Scenario,
        step: ConversationStep,
        mistake_count: int = 0,
        tutorial_mode: bool = False,
    ) -> BotResponse:
        ...


class AdvanceOutcome(str, Enum):
    """Result of finishing a scenario."""
    ADVANCED = "advanced"
    SHOW_TRANSITION = "show_transition"
    ALL_FINISHED = "all_finished"


def fallback_message() -> Message:
    return Message(role=Role.MODEL, text=FALLBACK_TEXT)


def is_fallback(message: Message) -> bool:
    return FALLBACK_MARKER in message.text


class ConversationController:
    """
    Owns the conversation state for one participant.

    Not shared between participants; all calls run on one event loop.
    """

    def __init__(
        self,
        user_email: str,
        generator: BotResponder,
        gateway: Optional[PersistenceGateway] = None,
        session_store: Optional[SessionIdStore] = None,
        catalog: Tuple[Scenario, ...] = SCENARIOS,
    ):
        if not catalog:
            raise ValueError("Scenario catalog is empty")
        self.user_email = user_email
        self.generator = generator
        self.gateway = gateway
        self.session_store = session_store or SessionIdStore(persist=False)
        self.catalog = catalog
        self.session = ConversationSession()

    # ------------------------------------------------------------------ state

    @property
    def scenario(self) -> Scenario:
        return self.catalog[self.session.scenario_index]

    @property
    def is_tutorial(self) -> bool:
        return self.scenario.is_tutorial

    @property
    def is_user_turn(self) -> bool:
        return not self.session.is_loading and self.session.step not in (
            ConversationStep.INIT_MISLED,
            ConversationStep.COMPLETED,
        )

    def current_step_input(self) -> Optional[StepInput]:
        """Input mode for the participant's turn; None while it is not their turn."""
        if not self.is_user_turn:
            return None
        return self.scenario.step_input(self.session.step)

    def _issue_request(self) -> int:
        self.session.request_seq += 1
        self.session.is_loading = True
        return self.session.request_seq

    def _is_current(self, request_id: int) -> bool:
        return self.session.request_seq == request_id

    def _finish_request(self, request_id: int) -> None:
        if self._is_current(request_id):
            self.session.is_loading = False
            self.session.last_updated = datetime.now()

    def _persist(self, session_id: str, messages: List[Message]) -> None:
        if not self.gateway or not self.user_email or not session_id:
            return
        self.gateway.schedule_chat_save(
            session_id,
            self.user_email,
            self.scenario.id,
            self.scenario.title,
            [m.to_dict() for m in messages],
        )

    def _check_reply(self, reply: Any) -> BotResponse:
        """Re-validate whatever the generator returned."""
        if not isinstance(reply, BotResponse):
            reply = BotResponse.model_validate(reply)
        if self.is_tutorial and reply.sender == Sender.GUIDE:
            raise ResponseGeneratorError("Guide sender returned in tutorial mode")
        return reply

    # ------------------------------------------------------------- operations

    async def initialize(self) -> None:
        """Start (or restart) the active scenario from INIT_MISLED."""
        if not self.user_email:
            raise ConversationStateError("A participant email is required before chatting")

        scenario = self.scenario
        self.session.session_id = ""
        self.session.messages = []
        self.session.step = ConversationStep.INIT_MISLED
        self.session.mistake_count = 0
        self.session.created_at = datetime.now()

        request_id = self._issue_request()
        try:
            # File write, kept off the event loop
            session_id = await asyncio.to_thread(self.session_store.get_or_create, scenario.id, self.user_email)
            if not self._is_current(request_id):
                return
            self.session.session_id = session_id

            reply = await self.generator.generate(
                "",
                [],
                scenario,
                ConversationStep.INIT_MISLED,
                0,
                scenario.is_tutorial,
            )
            if not self._is_current(request_id):
                logger.debug(f"⏭️ [Controller] Dropping stale init response #{request_id}")
                return
            reply = self._check_reply(reply)

            initial_messages = [reply.to_message()]
            self.session.messages = initial_messages
            if reply.should_advance:
                self.session.step = ConversationStep.USER_CORRECTS
            self._persist(session_id, initial_messages)
        except Exception as e:
            if self._is_current(request_id):
                logger.error(f"❌ [Controller] Failed to init scenario {scenario.id}: {e}")
                self.session.messages = [fallback_message()]
        finally:
            self._finish_request(request_id)

    async def submit_user_message(self, text: str) -> None:
        """Append the participant's message and ask the bot to respond."""
        if self.session.step == ConversationStep.COMPLETED:
            raise ConversationStateError("Scenario already completed")

        messages_with_user = [*self.session.messages, Message(role=Role.USER, text=text)]
        self.session.messages = messages_with_user
        session_id = self.session.session_id
        self._persist(session_id, messages_with_user)
        await self.process_turn(text, messages_with_user, session_id)

    async def process_turn(self, user_text: str, history: List[Message], session_id: str) -> None:
        """
        Run one generator call and apply its decision.

        Args:
            user_text: Message the bot is answering
            history: Transcript to send, already containing user_text
            session_id: Session the resulting transcript is saved under
        """
        request_id = self._issue_request()
        scenario = self.scenario
        step = self.session.step
        next_step = potential_next_step(step)

        try:
            reply = await self.generator.generate(
                user_text,
                history,
                scenario,
                step,
                self.session.mistake_count,
                scenario.is_tutorial,
            )
            if not self._is_current(request_id):
                logger.debug(f"⏭️ [Controller] Dropping stale response #{request_id}")
                return
            reply = self._check_reply(reply)

            final_messages = [*history, reply.to_message()]
            self.session.messages = final_messages

            if reply.should_advance:
                self.session.step = next_step
                self.session.mistake_count = 0
                logger.info(f"➡️ [Controller] Scenario {scenario.id}: {step.name} -> {next_step.name}")
            elif reply.sender == Sender.GUIDE:
                self.session.mistake_count += 1
                logger.info(f"🧭 [Controller] Guide intervention (mistakes={self.session.mistake_count})")

            self._persist(session_id, final_messages)
        except Exception as e:
            if self._is_current(request_id):
                logger.error(f"❌ [Controller] Error generating response: {e}")
                self.session.messages = [*self.session.messages, fallback_message()]
        finally:
            self._finish_request(request_id)

    async def resend_last(self) -> None:
        """Retry after a failure by resending the latest user message."""
        if not self.session.has_user_message():
            await self.initialize()
            return

        clean_messages = [m for m in self.session.messages if not is_fallback(m)]
        self.session.messages = clean_messages
        last_user = self.session.last_user_message()
        if last_user:
            await self.process_turn(last_user.text, clean_messages, self.session.session_id)

    async def advance_scenario(self) -> AdvanceOutcome:
        """Move on after COMPLETED, or report why the flow should pause."""
        if self.session.step != ConversationStep.COMPLETED:
            raise ConversationStateError("Scenario is not completed yet")

        next_index = self.session.scenario_index + 1
        if next_index >= len(self.catalog):
            return AdvanceOutcome.ALL_FINISHED

        if self.is_tutorial and not self.catalog[next_index].is_tutorial:
            return AdvanceOutcome.SHOW_TRANSITION

        await self.select_scenario(next_index)
        return AdvanceOutcome.ADVANCED

    async def select_scenario(self, index: int) -> None:
        if not 0 <= index < len(self.catalog):
            raise ConversationStateError(f"No scenario at index {index}")
        self.session.scenario_index = index
        await self.initialize()

    async def start_tutorial(self) -> None:
        await self.select_scenario(0)

    async def start_training(self) -> None:
        await self.select_scenario(first_training_index(self.catalog))

    def reset(self) -> None:
        """Clear the module state; any in-flight call becomes stale."""
        self.session.request_seq += 1
        self.session.scenario_index = 0
        self.session.messages = []
        self.session.step = ConversationStep.INIT_MISLED
        self.session.mistake_count = 0
        self.session.session_id = ""
        self.session.is_loading = False

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view for the HTTP layer."""
        step_input = self.current_step_input()
        scripted = None
        if isinstance(step_input, ScriptedInput):
            scripted = {"guide_message": step_input.guide_message, "options": list(step_input.options)}

        return {
            "scenario_id": self.scenario.id,
            "scenario_title": self.scenario.title,
            "scenario_index": self.session.scenario_index,
            "is_tutorial": self.is_tutorial,
            "training_progress": training_progress(self.session.scenario_index, self.catalog),
            "step": self.session.step.name,
            "step_id": int(self.session.step),
            "mistake_count": self.session.mistake_count,
            "is_loading": self.session.is_loading,
            "is_completed": self.session.step == ConversationStep.COMPLETED,
            "is_user_turn": self.is_user_turn,
            "input_mode": "free_text" if isinstance(step_input, FreeTextInput) else "scripted" if scripted else None,
            "tutorial_step": scripted,
            "session_id": self.session.session_id,
            "messages": self.session.transcript(),
        }
