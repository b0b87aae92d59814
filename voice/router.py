"""
Intent Router — trigger gating and phrase-table command classification.

Routing steps for one transcription:
  1. drop single-word text
  2. require a trigger phrase unless the session listens freely
  3. strip the first occurrence of each trigger phrase
  4. classify a normalized copy (lowercase, no punctuation) against an
     ordered phrase table, first match wins; the stripped text as spoken is
     what goes downstream; a short list of bare commands ("stop", "leave")
     only match when they are the whole utterance

A phrase set matches when every word of any one of its tuples appears in
the normalized text, in any order and position.
"""
from __future__ import annotations

import re
import structlog
from typing import Iterable, Optional, Sequence

from models.schemas import Intent, RouteDecision

logger = structlog.get_logger()

PhraseSet = tuple[tuple[str, ...], ...]


# ══════════════════════════════════════════════════════════════
#  PHRASE TABLE
# ══════════════════════════════════════════════════════════════

STOP_PHRASES: PhraseSet = (
    ("stop", "talking"), ("stop", "speaking"), ("stop", "playing"),
    ("shut", "up"), ("be", "quiet"),
)
RESET_PHRASES: PhraseSet = (
    ("reset", "conversation"), ("reset", "history"), ("reset", "chat"),
    ("clear", "history"), ("forget", "everything"), ("new", "conversation"),
)
LEAVE_PHRASES: PhraseSet = (
    ("leave", "channel"), ("leave", "call"), ("leave", "voice"),
    ("disconnect", "channel"), ("disconnect", "yourself"), ("get", "out", "channel"),
)
SONG_PHRASES: PhraseSet = (
    ("play", "song"), ("play", "music"), ("play", "track"), ("play", "by"),
)
TIMER_SET_PHRASES: PhraseSet = (
    ("set", "timer"), ("set", "alarm"), ("start", "timer"),
    ("create", "timer"), ("create", "alarm"), ("remind", "me", "in"),
)
TIMER_CANCEL_PHRASES: PhraseSet = (
    ("cancel", "timer"), ("cancel", "timers"), ("cancel", "alarm"), ("cancel", "alarms"),
    ("delete", "timer"), ("delete", "alarm"), ("remove", "timer"), ("remove", "alarm"),
)
TIMER_LIST_PHRASES: PhraseSet = (
    ("list", "timers"), ("list", "alarms"), ("list", "timer"), ("list", "alarm"),
    ("what", "timers"), ("what", "alarms"), ("which", "timers"), ("which", "alarms"),
    ("show", "timers"), ("show", "alarms"), ("how", "many", "timers"),
)
SEARCH_PHRASES: PhraseSet = (
    ("search", "for"), ("search", "web"), ("search", "internet"),
    ("look", "up", "online"), ("look", "up", "web"), ("google",),
)

# Evaluated top to bottom. CHAT is the fallback.
INTENT_TABLE: tuple[tuple[Intent, PhraseSet], ...] = (
    (Intent.STOP, STOP_PHRASES),
    (Intent.RESET, RESET_PHRASES),
    (Intent.LEAVE, LEAVE_PHRASES),
    (Intent.SONG, SONG_PHRASES),
    (Intent.TIMER_SET, TIMER_SET_PHRASES),
    (Intent.TIMER_CANCEL, TIMER_CANCEL_PHRASES),
    (Intent.TIMER_LIST, TIMER_LIST_PHRASES),
    (Intent.SEARCH, SEARCH_PHRASES),
)

# Commands spoken on their own; matched against the whole normalized text,
# never as words inside a longer request.
BARE_COMMANDS: dict[str, Intent] = {
    "stop": Intent.STOP,
    "stop it": Intent.STOP,
    "silence": Intent.STOP,
    "quiet": Intent.STOP,
    "leave": Intent.LEAVE,
    "disconnect": Intent.LEAVE,
}

ORDINALS: dict[str, int] = {
    "first": 1, "1st": 1, "one": 1,
    "second": 2, "2nd": 2, "two": 2,
    "third": 3, "3rd": 3, "three": 3,
    "fourth": 4, "4th": 4, "four": 4,
    "fifth": 5, "5th": 5, "five": 5,
    "sixth": 6, "6th": 6, "six": 6,
    "seventh": 7, "7th": 7, "seven": 7,
    "eighth": 8, "8th": 8, "eight": 8,
    "ninth": 9, "9th": 9, "nine": 9,
    "tenth": 10, "10th": 10, "ten": 10,
}


# ══════════════════════════════════════════════════════════════
#  TEXT HELPERS
# ══════════════════════════════════════════════════════════════

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_LEADING_PUNCT = re.compile(r"^[\s,.!?;:\-]+")
# Numbers keep their decimal part and ordinal suffix; "5-minute" is two tokens.
_TOKEN = re.compile(r"\d+(?:\.\d+)?(?:st|nd|rd|th)?|[^\W\d_]+")


def normalize(text: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    text = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def tokenize(text: str) -> list[str]:
    """Lowercase word and number tokens, split on any punctuation."""
    return _TOKEN.findall(text.lower())


def matches(words: Iterable[str], phrases: PhraseSet) -> bool:
    word_set = set(words)
    return any(all(w in word_set for w in alternative) for alternative in phrases)


def parse_ordinal(normalized: str) -> Optional[int]:
    """First ordinal word, number word or digit in the text, as a 1-based index."""
    for token in normalized.split():
        if token.isdigit():
            return int(token)
        if token in ORDINALS:
            return ORDINALS[token]
    return None


def text_after(text: str, word: str) -> str:
    """Text, as spoken, following the first occurrence of `word`."""
    match = re.search(r"\b" + re.escape(word) + r"\b", text, re.IGNORECASE)
    if not match:
        return ""
    return _LEADING_PUNCT.sub("", text[match.end():]).strip()


# ══════════════════════════════════════════════════════════════
#  ROUTER
# ══════════════════════════════════════════════════════════════

class IntentRouter:

    def __init__(
        self,
        triggers: Sequence[str],
        ignore_phrases: Sequence[str] = (),
        table: Sequence[tuple[Intent, PhraseSet]] = INTENT_TABLE,
        bare_commands: Optional[dict[str, Intent]] = None,
    ):
        self.triggers = [t.strip() for t in triggers if t and t.strip()]
        self._trigger_patterns = [
            re.compile(r"\b" + re.escape(t) + r"\b", re.IGNORECASE) for t in self.triggers
        ]
        self.ignore_phrases = {normalize(p) for p in ignore_phrases if p}
        self.table = tuple(table)
        self.bare_commands = dict(BARE_COMMANDS if bare_commands is None else bare_commands)

    def is_ignored(self, text: str) -> bool:
        normalized = normalize(text)
        return not normalized or normalized in self.ignore_phrases

    def has_trigger(self, text: str) -> bool:
        return any(p.search(text) for p in self._trigger_patterns)

    def strip_triggers(self, text: str) -> str:
        for pattern in self._trigger_patterns:
            text = pattern.sub("", text, count=1)
        text = _WHITESPACE.sub(" ", text).strip()
        return _LEADING_PUNCT.sub("", text)

    def classify(self, normalized: str) -> Intent:
        if normalized in self.bare_commands:
            return self.bare_commands[normalized]
        words = normalized.split()
        for intent, phrases in self.table:
            if matches(words, phrases):
                return intent
        return Intent.CHAT

    def route(self, text: str, free_listen: bool = False) -> Optional[RouteDecision]:
        """Routing decision for one transcription, or None if it is not for us."""
        if len(text.split()) <= 1:
            logger.info("route_dropped", reason="single_word")
            return None
        if not free_listen and not self.has_trigger(text):
            logger.info("route_dropped", reason="not_addressed")
            return None

        stripped = self.strip_triggers(text)
        normalized = normalize(stripped)
        if not normalized:
            logger.info("route_dropped", reason="trigger_only")
            return None

        intent = self.classify(normalized)
        logger.info("routed", intent=intent.value, text=stripped)
        return RouteDecision(intent=intent, text=stripped, normalized=normalized)
