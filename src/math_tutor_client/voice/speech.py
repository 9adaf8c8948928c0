"""Spoken output of tutor responses."""

import re
from typing import Protocol

from math_tutor_client.conversation.classifier import strip_topic_tags

# (pattern, replacement) applied in order
_SPEECH_CLEANUPS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"_([^_]+)_"), r"\1"),
    (re.compile(r"```[^`]*```"), ""),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"#{1,6}\s+"), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\$\$[^$]+\$\$"), "mathematical expression"),
    (re.compile(r"\$[^$]+\$"), "expression"),
    (re.compile(r"\s+"), " "),
]


class SpeechOutput(Protocol):
    """Text-to-speech sink; the voice controller treats speaking as busy."""

    @property
    def is_speaking(self) -> bool: ...

    async def speak(self, text: str) -> None: ...

    async def stop(self) -> None: ...


def clean_text_for_speech(text: str) -> str:
    """Strip markup that reads badly aloud (tags, markdown, math notation)."""
    text = strip_topic_tags(text)
    for pattern, replacement in _SPEECH_CLEANUPS:
        text = pattern.sub(replacement, text)
    return text.strip()
