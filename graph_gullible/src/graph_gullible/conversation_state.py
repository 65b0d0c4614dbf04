"""
Conversation State Data Model

Defines the message, step and session types for one participant working
through one scenario, plus the outer study progress flags.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Author of a transcript message."""
    USER = "user"
    MODEL = "model"
    GUIDE = "guide"


class Sender(str, Enum):
    """Roles the response generator may answer with."""
    MODEL = "model"
    GUIDE = "guide"


class ConversationStep(IntEnum):
    """Four-step teaching script, strictly linear."""
    INIT_MISLED = 0            # Bot: interprets the chart wrongly
    USER_CORRECTS = 1          # User corrects the bot
    USER_EXPLAINS_FEATURE = 2  # User names the misleading feature
    USER_SUGGESTS_FIX = 3      # User proposes a fix
    COMPLETED = 4


# Forward mapping applied on a successful turn. INIT_MISLED advances through
# initialize(), and COMPLETED is terminal.
NEXT_STEP: Dict[ConversationStep, ConversationStep] = {
    ConversationStep.USER_CORRECTS: ConversationStep.USER_EXPLAINS_FEATURE,
    ConversationStep.USER_EXPLAINS_FEATURE: ConversationStep.USER_SUGGESTS_FIX,
    ConversationStep.USER_SUGGESTS_FIX: ConversationStep.COMPLETED,
}


def potential_next_step(step: ConversationStep) -> ConversationStep:
    """Step reached if the current turn succeeds; other steps map to themselves."""
    return NEXT_STEP.get(step, step)


@dataclass
class Message:
    """Single transcript entry."""
    role: Role
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "text": self.text}


class BotResponse(BaseModel):
    """Structured decision returned by the response generator."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sender: Sender
    text: str
    should_advance: bool = Field(alias="shouldAdvance")

    def to_message(self) -> Message:
        return Message(role=Role(self.sender.value), text=self.text)


@dataclass
class ConversationSession:
    """Mutable run-time state for one participant on one scenario."""
    scenario_index: int = 0
    step: ConversationStep = ConversationStep.INIT_MISLED
    mistake_count: int = 0
    messages: List[Message] = field(default_factory=list)
    session_id: str = ""
    request_seq: int = 0
    is_loading: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    last_updated: datetime = field(default_factory=datetime.now)

    def has_user_message(self) -> bool:
        return any(m.role == Role.USER for m in self.messages)

    def last_user_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == Role.USER:
                return message
        return None

    def transcript(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]


class UserGroup(str, Enum):
    """A/B study arm."""
    A = "A"
    B = "B"


class AppView(str, Enum):
    EMAIL = "email"
    DASHBOARD = "dashboard"
    CHAT = "chat"


@dataclass
class ProgressState:
    """Dashboard progress. Flags only ever flip from False to True."""
    pre_survey: bool = False
    intervention: bool = False
    post_survey: bool = False

    def mark(self, key: str) -> None:
        if key not in ("pre_survey", "intervention", "post_survey"):
            raise KeyError(f"Unknown progress step: {key}")
        setattr(self, key, True)

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)
