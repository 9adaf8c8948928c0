"""Detection of topic tags and completion phrases in tutor responses."""

import re
from typing import Protocol

COMPLETION_PHRASES: tuple[str, ...] = (
    "congratulations",
    "you've solved",
    "excellent work",
    "problem is complete",
    "successfully solved",
)

TOPIC_PATTERN = re.compile(r"\[TOPIC:\s*([^\]]+)\]", re.IGNORECASE)


class ResponseClassifier(Protocol):
    """Reads markers out of free-form model output."""

    def detect_topic(self, text: str) -> str | None: ...

    def is_complete(self, text: str) -> bool: ...


class MarkerClassifier:
    """Default classifier: ``[TOPIC: name]`` tags and a fixed phrase set."""

    def __init__(self, completion_phrases: tuple[str, ...] = COMPLETION_PHRASES):
        self.completion_phrases = tuple(p.lower() for p in completion_phrases)

    def detect_topic(self, text: str) -> str | None:
        """Return the first tagged topic, or None."""
        match = TOPIC_PATTERN.search(text)
        if not match:
            return None
        topic = match.group(1).strip()
        return topic or None

    def is_complete(self, text: str) -> bool:
        lowered = text.lower()
        return any(phrase in lowered for phrase in self.completion_phrases)


def strip_topic_tags(text: str) -> str:
    return TOPIC_PATTERN.sub("", text).strip()
