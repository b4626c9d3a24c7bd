"""Per-session conversation state."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from shield_chat.budget.governor import BudgetState
from shield_chat.config import BudgetConfig
from shield_chat.safety.session import csrf_token as new_csrf_token
from shield_chat.types import GuardrailSignal, Message

SUPPORTED_LANGUAGES = ("en", "es")


def normalize_language(value: str | None) -> str:
    lowered = (value or "").strip().lower()
    return lowered if lowered in SUPPORTED_LANGUAGES else SUPPORTED_LANGUAGES[0]


@dataclass(slots=True)
class ChatSession:
    """History, budget ledger and anti-forgery token owned by one session.

    History is append-only; only the trailing window is ever replayed to the
    remote tier. The budget ledger lives and dies with the session.
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    language: str = "en"
    messages: list[Message] = field(default_factory=list)
    budget: BudgetState = field(default_factory=BudgetState)
    csrf_token: str = field(default_factory=new_csrf_token)
    honeypot_value: str = ""
    last_guardrails: list[GuardrailSignal] = field(default_factory=list)

    @classmethod
    def start(
        cls, language: str | None = None, budget: BudgetConfig | None = None
    ) -> "ChatSession":
        return cls(
            language=normalize_language(language),
            budget=BudgetState.from_config(budget),
        )

    def append(self, role: str, content: str) -> Message:
        message = Message(role=role, content=content, language=self.language)
        self.messages.append(message)
        return message

    def window(self, size: int = 16) -> list[Message]:
        return self.messages[-size:]

    @property
    def headroom(self) -> int:
        return max(0, self.budget.hard - self.budget.spent)
