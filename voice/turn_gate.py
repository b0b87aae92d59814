"""
Turn Gate — single-flight control over conversational turns.

One gate per voice session, shared by every speaker. A turn is the whole
cycle from an accepted utterance to its fully played reply; while one is in
flight every other utterance is transcribed but never dispatched.

Every granted Turn is released exactly once: `release()` is a no-op for a
turn that is no longer the owner, so the normal path, the error path and a
forced barge-in release can all fire without double-freeing a newer turn.
"""
from __future__ import annotations

import itertools
import time
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = structlog.get_logger()

_turn_ids = itertools.count(1)


class GateState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


@dataclass
class Turn:
    """Ownership token handed out by `TurnGate.try_enter`."""
    user_id: str
    turn_id: int = field(default_factory=lambda: next(_turn_ids))
    started_at: float = field(default_factory=time.monotonic)
    released: bool = False
    release_reason: str = ""

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class TurnGate:

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._current: Optional[Turn] = None
        self._granted = 0
        self._rejected = 0

    @property
    def state(self) -> GateState:
        return GateState.BUSY if self._current is not None else GateState.IDLE

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> Optional[Turn]:
        return self._current

    def try_enter(self, user_id: str) -> Optional[Turn]:
        """Grant a new turn, or return None while another one is in flight."""
        if self._current is not None:
            self._rejected += 1
            logger.info("turn_rejected_busy",
                        session_id=self.session_id, user_id=user_id,
                        holder=self._current.user_id, turn_id=self._current.turn_id)
            return None
        turn = Turn(user_id=user_id)
        self._current = turn
        self._granted += 1
        logger.info("turn_granted", session_id=self.session_id,
                    user_id=user_id, turn_id=turn.turn_id)
        return turn

    def is_current(self, turn: Optional[Turn]) -> bool:
        return turn is not None and turn is self._current and not turn.released

    def release(self, turn: Turn, reason: str = "completed") -> bool:
        """Release the gate if `turn` still owns it. Returns True if it did."""
        if not self.is_current(turn):
            return False
        turn.released = True
        turn.release_reason = reason
        self._current = None
        logger.info("turn_released", session_id=self.session_id,
                    turn_id=turn.turn_id, reason=reason, elapsed_ms=turn.elapsed_ms)
        return True

    def force_release(self, reason: str = "forced") -> Optional[Turn]:
        """Release whatever turn holds the gate (barge-in, session teardown)."""
        turn = self._current
        if turn is None:
            return None
        self.release(turn, reason)
        return turn

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "turn_id": self._current.turn_id if self._current else None,
            "holder": self._current.user_id if self._current else None,
            "granted": self._granted,
            "rejected": self._rejected,
        }
