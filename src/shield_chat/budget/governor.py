"""Session generation budget: cost proxy, caps, and metered accumulation."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from shield_chat.config import BudgetConfig


class BudgetLevel(str, Enum):
    OK = "ok"
    SOFT = "soft"
    HARD = "hard"


@dataclass(slots=True)
class BudgetState:
    """Per-session budget ledger. `spent` only grows until the session resets."""

    spent: int = 0
    soft: int = 75_000
    hard: int = 100_000

    @classmethod
    def from_config(cls, config: BudgetConfig | None = None) -> "BudgetState":
        cfg = config or BudgetConfig()
        return cls(spent=0, soft=cfg.soft_cap, hard=cfg.hard_cap)


class BudgetGovernor:
    """Classifies a `BudgetState` against its soft and hard caps.

    The governor owns no state of its own: it reads and writes the
    `BudgetState` it was given, so each session threads its own ledger
    through resolution calls.
    """

    def __init__(self, state: BudgetState, config: BudgetConfig | None = None) -> None:
        self.state = state
        self.config = config or BudgetConfig()

    def approx_cost(self, text: str) -> int:
        """Characters divided by `chars_per_unit`, rounded up."""
        return math.ceil(len(text or "") / self.config.chars_per_unit)

    def can_spend(self, amount: int) -> bool:
        return self.state.spent + amount <= self.state.hard

    def note(self, amount: int) -> None:
        """Charge one accepted chunk. Call exactly once per chunk."""
        self.state.spent += max(0, int(amount))

    @property
    def headroom(self) -> int:
        return max(0, self.state.hard - self.state.spent)

    def has_headroom(self, reserve: int) -> bool:
        return self.can_spend(reserve)

    @property
    def level(self) -> BudgetLevel:
        if self.state.spent >= self.state.hard:
            return BudgetLevel.HARD
        if self.state.spent >= self.state.soft:
            return BudgetLevel.SOFT
        return BudgetLevel.OK

    @property
    def soft_exceeded(self) -> bool:
        return self.level is BudgetLevel.SOFT


class MeteredAnswer:
    """Accumulates streamed chunks, checking each against the hard cap first.

    A chunk that would push `spent` past the hard cap is dropped whole: it is
    neither appended nor charged. The stream itself keeps flowing so the
    caller can drain it; `on_cap_hit` fires for every dropped chunk.
    """

    def __init__(
        self,
        governor: BudgetGovernor,
        on_cap_hit: Callable[[], None] | None = None,
    ) -> None:
        self.governor = governor
        self._on_cap_hit = on_cap_hit
        self._parts: list[str] = []
        self.charged = 0
        self.dropped = 0

    def offer(self, chunk: str) -> bool:
        if not chunk:
            return True
        cost = self.governor.approx_cost(chunk)
        if not self.governor.can_spend(cost):
            self.dropped += 1
            if self._on_cap_hit is not None:
                self._on_cap_hit()
            return False
        self.governor.note(cost)
        self.charged += cost
        self._parts.append(chunk)
        return True

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def cap_hit(self) -> bool:
        return self.dropped > 0
