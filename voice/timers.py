"""
Timer/Alarm subsystem — spoken timers with their own expiry callbacks.

Per alarm: Scheduled → Fired | Cancelled, terminal either way.

Alarms are kept in insertion order and that order is the only numbering
the user ever hears: "timer 2" means the second alarm created that is still
pending, both when listing and when cancelling.

Expiry uses `loop.call_later`; firing removes the alarm and starts its cue
in one synchronous callback, so no other coroutine can observe a fired
alarm still in the list.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime, tzinfo
from typing import Callable, Optional

from models.schemas import Alarm, AlarmType
from voice.errors import TimerParseError
from voice.output import AudioOutput, CueSound
from voice.router import parse_ordinal, tokenize
from voice.session import VoiceSession

logger = structlog.get_logger()


UNIT_SECONDS: dict[str, int] = {
    "second": 1, "seconds": 1, "sec": 1, "secs": 1,
    "minute": 60, "minutes": 60, "min": 60, "mins": 60,
    "hour": 3600, "hours": 3600, "hr": 3600, "hrs": 3600,
}

NUMBER_WORDS: dict[str, int] = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9,
}

_CUE_FOR_TYPE = {AlarmType.TIMER: CueSound.TIMER, AlarmType.ALARM: CueSound.ALARM}


def parse_duration(query: str) -> tuple[int, str]:
    """
    Quantity and unit from a timer request.
    Returns (total seconds, unit word as spoken). Raises TimerParseError.

    Only whole quantities are accepted, as a digit or a number word;
    "1.5 hours" is refused rather than read as 15.
    """
    tokens = tokenize(query)
    unit = next((t for t in tokens if t in UNIT_SECONDS), None)
    if unit is None:
        raise TimerParseError("no time unit in request", query=query)

    quantity = None
    for t in tokens:
        if "." in t:
            raise TimerParseError("fractional quantity in request", query=query)
        if t.isdigit():
            quantity = int(t)
            break
        if t in NUMBER_WORDS:
            quantity = NUMBER_WORDS[t]
            break
    if not quantity:
        raise TimerParseError("no quantity in request", query=query)

    return quantity * UNIT_SECONDS[unit], unit


def parse_cancel_reference(query: str) -> Optional[int]:
    """
    1-based alarm position named in a cancel request, or None.
    A number followed by a unit ("the 5 minute timer") is a duration, not a position.
    """
    tokens = tokenize(query)
    for i, token in enumerate(tokens):
        following = tokens[i + 1] if i + 1 < len(tokens) else ""
        if following in UNIT_SECONDS:
            continue
        position = parse_ordinal(token)
        if position is not None:
            return position
    return None


def _spoken_duration(seconds: int) -> str:
    for unit, size in (("hour", 3600), ("minute", 60), ("second", 1)):
        if seconds % size == 0:
            n = seconds // size
            return f"{n} {unit}" + ("" if n == 1 else "s")
    return f"{seconds} seconds"


class TimerService:

    def __init__(self, output: AudioOutput, clock: Callable[[], float] = time.time,
                 tz: Optional[tzinfo] = None):
        self.output = output
        self.clock = clock
        self.tz = tz                        # None renders in host local time

    # ── Set ───────────────────────────────────────────────────

    def set_timer(self, session: VoiceSession, query: str,
                  alarm_type: Optional[AlarmType] = None) -> Alarm:
        seconds, _ = parse_duration(query)
        if alarm_type is None:
            alarm_type = AlarmType.ALARM if "alarm" in tokenize(query) else AlarmType.TIMER
        return self.schedule(session, seconds, alarm_type)

    def schedule(self, session: VoiceSession, seconds: float, alarm_type: AlarmType) -> Alarm:
        now = self.clock()
        expires_at = now + seconds
        fmt = "%H:%M:%S" if seconds % 60 else "%H:%M"
        alarm = Alarm(
            expires_at_ms=int(round(expires_at * 1000)),
            type=alarm_type,
            formatted_time=datetime.fromtimestamp(expires_at, self.tz).strftime(fmt),
            duration_seconds=int(seconds),
        )
        loop = asyncio.get_running_loop()
        session.alarm_handles[alarm.id] = loop.call_later(
            seconds, self._fire, session, alarm.id,
        )
        session.alarms.append(alarm)
        logger.info("alarm_scheduled", session_id=session.session_id, alarm_id=alarm.id,
                    type=alarm_type.value, seconds=seconds, at=alarm.formatted_time)
        return alarm

    def describe_set(self, alarm: Alarm) -> str:
        label = alarm.type.value.capitalize()
        return f"{label} set for {_spoken_duration(alarm.duration_seconds)}."

    def _fire(self, session: VoiceSession, alarm_id: str) -> None:
        session.alarm_handles.pop(alarm_id, None)
        alarm = next((a for a in session.alarms if a.id == alarm_id), None)
        if alarm is None:
            return
        session.alarms.remove(alarm)
        if not session.active:
            return
        logger.info("alarm_fired", session_id=session.session_id,
                    alarm_id=alarm_id, type=alarm.type.value)
        self.output.play_cue(session, _CUE_FOR_TYPE[alarm.type])

    # ── Cancel ────────────────────────────────────────────────

    def cancel(self, session: VoiceSession, alarm: Alarm) -> None:
        handle = session.alarm_handles.pop(alarm.id, None)
        if handle is not None:
            handle.cancel()
        if alarm in session.alarms:
            session.alarms.remove(alarm)
        logger.info("alarm_cancelled", session_id=session.session_id, alarm_id=alarm.id)

    def cancel_timer(self, session: VoiceSession, query: str = "") -> str:
        """Handle a spoken cancel request. Returns the reply to speak."""
        alarms = session.alarms
        if not alarms:
            return "There are no timers to cancel."

        if "all" in tokenize(query):
            count = len(alarms)
            for alarm in list(alarms):
                self.cancel(session, alarm)
            return f"Cancelled all {count} timers." if count > 1 else "Cancelled the timer."

        position = parse_cancel_reference(query)
        if position is None or (len(alarms) == 1 and position != 1):
            if len(alarms) == 1:
                alarm = alarms[0]
                self.cancel(session, alarm)
                return f"{alarm.type.value.capitalize()} cancelled."
            listing = ", ".join(a.describe(i) for i, a in enumerate(alarms, start=1))
            return f"You have {len(alarms)} timers: {listing}. Which one should I cancel?"

        if position < 1 or position > len(alarms):
            return f"There is no timer number {position}."
        alarm = alarms[position - 1]
        self.cancel(session, alarm)
        return f"{alarm.type.value.capitalize()} {position} cancelled."

    # ── List ──────────────────────────────────────────────────

    def list_timers(self, session: VoiceSession) -> str:
        alarms = session.alarms
        if not alarms:
            return "There are no timers set."
        described = [a.describe(i) for i, a in enumerate(alarms, start=1)]
        if len(described) == 1:
            return f"There is one timer: {described[0]}."
        return f"There are {len(described)} timers: {', '.join(described)}."

    # ── Teardown ──────────────────────────────────────────────

    def clear(self, session: VoiceSession) -> int:
        count = len(session.alarms)
        for handle in session.alarm_handles.values():
            handle.cancel()
        session.alarm_handles.clear()
        session.alarms.clear()
        return count
