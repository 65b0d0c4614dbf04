"""
Study Flow

Outer research protocol around the chat module:
1. Email gate - participant identifies, gets an A/B group
2. Pre-survey - verified with a completion code
3. Chat intervention - tutorial then training scenarios
4. Post-survey - unlocked once the intervention is done

Dashboard steps unlock strictly in that order and progress flags never revert.
"""

import os
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from graph_gullible.conversation_controller import AdvanceOutcome, BotResponder, ConversationController
from graph_gullible.conversation_state import AppView, ProgressState, UserGroup
from graph_gullible.errors import StudyFlowError
from graph_gullible.persistence import PersistenceGateway
from graph_gullible.scenarios import SCENARIOS, tutorial_count
from graph_gullible.session_store import SessionIdStore

load_dotenv()

logger = logging.getLogger(__name__)

INVALID_CODE_MESSAGE = "Invalid code. Please check the end of the survey."


class SurveyKind(str, Enum):
    PRE = "pre"
    POST = "post"


class ChatOverlay(str, Enum):
    """Full-screen overlays inside the chat module."""
    NONE = "none"
    INTRO = "intro"
    TRANSITION = "transition"
    ENDING = "ending"


@dataclass
class SurveyConfig:
    """Completion codes and group-specific survey links."""
    pre_survey_code: str
    post_survey_code: str
    urls: Dict[UserGroup, Dict[SurveyKind, str]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "SurveyConfig":
        urls = {}
        for group in UserGroup:
            urls[group] = {
                SurveyKind.PRE: os.getenv(f"GROUP_{group.value}_PRE_SURVEY_URL", ""),
                SurveyKind.POST: os.getenv(f"GROUP_{group.value}_POST_SURVEY_URL", ""),
            }
        return cls(
            pre_survey_code=os.getenv("PRE_SURVEY_CODE", "START123").strip().upper(),
            post_survey_code=os.getenv("POST_SURVEY_CODE", "FINISH123").strip().upper(),
            urls=urls,
        )

    def code_for(self, kind: SurveyKind) -> str:
        return self.pre_survey_code if kind == SurveyKind.PRE else self.post_survey_code


def assign_group(rng: Optional[random.Random] = None) -> UserGroup:
    """Random A/B assignment with equal probability."""
    draw = (rng or random).random()
    return UserGroup.A if draw < 0.5 else UserGroup.B


def normalize_email(email: str) -> str:
    email = (email or "").strip()
    if not email or "@" not in email:
        raise StudyFlowError("Please enter a valid email address")
    return email


class StudyFlow:
    """
    Per-participant protocol state.

    Owns the participant's ConversationController once the email is known.
    """

    def __init__(
        self,
        generator: BotResponder,
        gateway: Optional[PersistenceGateway] = None,
        session_store: Optional[SessionIdStore] = None,
        survey_config: Optional[SurveyConfig] = None,
        rng: Optional[random.Random] = None,
        catalog=SCENARIOS,
    ):
        self.generator = generator
        self.gateway = gateway
        self.session_store = session_store
        self.survey_config = survey_config or SurveyConfig.from_env()
        self.rng = rng
        self.catalog = catalog

        self.view = AppView.EMAIL
        self.user_email: Optional[str] = None
        self.group: Optional[UserGroup] = None
        self.progress = ProgressState()
        self.overlay = ChatOverlay.NONE
        self.controller: Optional[ConversationController] = None

    # ----------------------------------------------------------- email gate

    def submit_email(self, email: str) -> UserGroup:
        """Register the participant and move to the dashboard."""
        self.user_email = normalize_email(email)
        self.group = assign_group(self.rng)
        if self.gateway:
            self.gateway.schedule_group_save(self.user_email, self.group.value)

        self.controller = ConversationController(
            self.user_email,
            self.generator,
            gateway=self.gateway,
            session_store=self.session_store,
            catalog=self.catalog,
        )
        self.view = AppView.DASHBOARD
        logger.info(f"👤 [StudyFlow] Participant registered in group {self.group.value}")
        return self.group

    def _require_participant(self) -> ConversationController:
        if self.controller is None or not self.user_email:
            raise StudyFlowError("Enter your email first")
        return self.controller

    # ------------------------------------------------------------ dashboard

    def is_unlocked(self, step: str) -> bool:
        if step == "pre_survey":
            return True
        if step == "intervention":
            return self.progress.pre_survey
        if step == "post_survey":
            return self.progress.intervention
        raise KeyError(f"Unknown dashboard step: {step}")

    def survey_url(self, kind: SurveyKind) -> str:
        self._require_participant()
        return self.survey_config.urls.get(self.group, {}).get(kind, "")

    def dashboard(self) -> List[Dict[str, Any]]:
        """Three dashboard cards with their lock and completion state."""
        steps = []
        for key in ("pre_survey", "intervention", "post_survey"):
            steps.append({
                "key": key,
                "complete": getattr(self.progress, key),
                "locked": not self.is_unlocked(key),
            })
        return steps

    def verify_survey_code(self, kind: SurveyKind, code: str) -> ProgressState:
        """Check a survey completion code and mark the step done."""
        self._require_participant()
        key = "pre_survey" if kind == SurveyKind.PRE else "post_survey"
        if not self.is_unlocked(key):
            raise StudyFlowError("This step is locked")

        if (code or "").strip().upper() != self.survey_config.code_for(kind):
            raise StudyFlowError(INVALID_CODE_MESSAGE)

        self.progress.mark(key)
        logger.info(f"✅ [StudyFlow] {kind.value}-survey verified")
        return self.progress

    # ---------------------------------------------------------- chat module

    def enter_chat(self) -> None:
        """Open the chat module at the intro overlay."""
        controller = self._require_participant()
        if not self.is_unlocked("intervention"):
            raise StudyFlowError("Complete the pre-survey first")
        controller.reset()
        self.view = AppView.CHAT
        self.overlay = ChatOverlay.INTRO

    def _require_chat(self) -> ConversationController:
        controller = self._require_participant()
        if self.view != AppView.CHAT:
            raise StudyFlowError("Chat module is not open")
        return controller

    async def start_tutorial(self) -> None:
        controller = self._require_chat()
        self.overlay = ChatOverlay.NONE
        await controller.start_tutorial()

    async def start_training(self) -> None:
        controller = self._require_chat()
        self.overlay = ChatOverlay.NONE
        await controller.start_training()

    async def next_scenario(self) -> AdvanceOutcome:
        controller = self._require_chat()
        outcome = await controller.advance_scenario()
        if outcome == AdvanceOutcome.SHOW_TRANSITION:
            self.overlay = ChatOverlay.TRANSITION
        elif outcome == AdvanceOutcome.ALL_FINISHED:
            self.overlay = ChatOverlay.ENDING
        return outcome

    def complete_chat_module(self) -> ProgressState:
        """Close the module after the ending overlay and unlock the post-survey."""
        controller = self._require_chat()
        if self.overlay != ChatOverlay.ENDING:
            raise StudyFlowError("Finish all scenarios first")
        self.progress.mark("intervention")
        controller.reset()
        self.overlay = ChatOverlay.NONE
        self.view = AppView.DASHBOARD
        return self.progress

    def return_to_dashboard(self) -> None:
        """Leave the chat module without completing it."""
        self._require_participant()
        self.view = AppView.DASHBOARD
        self.overlay = ChatOverlay.NONE

    def summary(self) -> Dict[str, Any]:
        total = len(self.catalog)
        tutorials = tutorial_count(self.catalog)
        return {
            "email": self.user_email,
            "group": self.group.value if self.group else None,
            "view": self.view.value,
            "overlay": self.overlay.value,
            "progress": self.progress.to_dict(),
            "tutorial_scenarios": tutorials,
            "training_scenarios": total - tutorials,
        }
