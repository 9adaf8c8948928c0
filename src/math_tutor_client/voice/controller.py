"""Silence-driven voice submission layered on top of the session orchestrator."""

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger()

MAX_LISTEN_SECONDS = 30.0
SILENCE_TIMEOUT_SECONDS = 3.0
SUBMIT_DELAY_SECONDS = 1.0

SubmitCallback = Callable[[str], Awaitable[Any]]
ChangeCallback = Callable[["VoiceSilenceController"], Awaitable[None]]


class VoicePhase(StrEnum):
    IDLE = "idle"
    LISTENING = "listening"
    COOLDOWN = "cooldown"  # auto-stopped, waiting to submit in hands-free mode


class VoiceSilenceController:
    """Converts speech-recognition results and silence into submissions.

    Three single-shot timers, at most one live per purpose:

    - ``ceiling``: stop listening after ``max_listen_seconds`` regardless.
    - ``silence``: stop after ``silence_timeout_seconds`` without speech
      events; every event re-arms it.
    - ``submit``: in hands-free mode, forward the transcript
      ``submit_delay_seconds`` after an automatic stop.

    Args:
        submit: Coroutine function receiving the transcript to send.
        is_busy: True while a response is loading or being spoken.
        max_listen_seconds: Hard listening ceiling.
        silence_timeout_seconds: Quiet interval that ends listening.
        submit_delay_seconds: Debounce before a hands-free submission.
    """

    def __init__(
        self,
        submit: SubmitCallback,
        is_busy: Callable[[], bool],
        max_listen_seconds: float = MAX_LISTEN_SECONDS,
        silence_timeout_seconds: float = SILENCE_TIMEOUT_SECONDS,
        submit_delay_seconds: float = SUBMIT_DELAY_SECONDS,
    ):
        self.submit = submit
        self.is_busy = is_busy
        self.max_listen_seconds = max_listen_seconds
        self.silence_timeout_seconds = silence_timeout_seconds
        self.submit_delay_seconds = submit_delay_seconds

        self._phase = VoicePhase.IDLE
        self._hands_free = False
        self._finalized = ""
        self._interim = ""
        self._timers: dict[str, asyncio.Task] = {}
        self._submission: asyncio.Task | None = None
        self._change_callbacks: list[ChangeCallback] = []

    @property
    def phase(self) -> VoicePhase:
        return self._phase

    @property
    def is_listening(self) -> bool:
        return self._phase is VoicePhase.LISTENING

    @property
    def hands_free(self) -> bool:
        return self._hands_free

    @property
    def transcript(self) -> str:
        """Finalized segments followed by the live interim segment."""
        return self._finalized + self._interim

    @property
    def pending_timers(self) -> list[str]:
        return sorted(name for name, task in self._timers.items() if not task.done())

    def on_change(self, callback: ChangeCallback) -> None:
        self._change_callbacks.append(callback)

    async def start_listening(self) -> bool:
        """Begin a new listening turn with an empty transcript."""
        if self._phase is VoicePhase.LISTENING:
            return False
        self._cancel_all_timers()
        self._finalized = ""
        self._interim = ""
        self._phase = VoicePhase.LISTENING
        self._arm("ceiling", self.max_listen_seconds, self._on_ceiling)
        logger.info("voice_listening_started", hands_free=self._hands_free)
        await self._notify()
        return True

    async def stop_listening(self) -> None:
        """Explicit stop: cancels every pending timer, including a queued submit."""
        self._cancel_all_timers()
        if self._phase is not VoicePhase.IDLE:
            self._phase = VoicePhase.IDLE
            logger.info("voice_listening_stopped")
        await self._notify()

    async def on_speech(self, text: str, is_final: bool) -> None:
        """Feed one recognition result.

        Args:
            text: Recognized text of the segment.
            is_final: Finalized segments accumulate; an interim segment
                replaces the previous interim one.
        """
        if self._phase is not VoicePhase.LISTENING:
            logger.debug("voice_result_ignored", phase=self._phase.value)
            return
        if is_final:
            if text.strip():
                self._finalized += text.strip() + " "
            self._interim = ""
        else:
            self._interim = text
        self._arm("silence", self.silence_timeout_seconds, self._on_silence)
        await self._notify()

    async def set_hands_free(self, enabled: bool) -> None:
        self._hands_free = enabled
        if not enabled:
            self._cancel_all_timers()
            self._phase = VoicePhase.IDLE
        logger.info("voice_hands_free", enabled=enabled)
        await self._notify()

    async def submit_transcript(self) -> bool:
        """Manually submit the current transcript."""
        text = self.transcript.strip()
        if not text:
            return False
        self._cancel_all_timers()
        self._phase = VoicePhase.IDLE
        self.reset_transcript()
        await self._notify()
        await self.submit(text)
        return True

    def reset_transcript(self) -> None:
        self._finalized = ""
        self._interim = ""

    async def close(self) -> None:
        self._cancel_all_timers()
        self._phase = VoicePhase.IDLE
        if self._submission and not self._submission.done():
            self._submission.cancel()
            await asyncio.gather(self._submission, return_exceptions=True)
        self._submission = None

    async def _on_ceiling(self) -> None:
        await self._auto_stop("max_listen_time")

    async def _on_silence(self) -> None:
        await self._auto_stop("silence")

    async def _auto_stop(self, reason: str) -> None:
        if self._phase is not VoicePhase.LISTENING:
            return
        self._cancel("ceiling")
        self._cancel("silence")
        logger.info("voice_auto_stopped", reason=reason)
        if self._hands_free and self.transcript.strip():
            self._phase = VoicePhase.COOLDOWN
            self._arm("submit", self.submit_delay_seconds, self._on_submit_delay)
        else:
            self._phase = VoicePhase.IDLE
        await self._notify()

    async def _on_submit_delay(self) -> None:
        if self._phase is not VoicePhase.COOLDOWN:
            return
        self._phase = VoicePhase.IDLE
        text = self.transcript.strip()
        if text and self.is_busy():
            # Kept for manual submission.
            logger.info("voice_submit_skipped_busy")
        elif text:
            self.reset_transcript()
            logger.info("voice_submitted", chars=len(text))
            self._submission = asyncio.create_task(self._deliver(text))
        await self._notify()

    async def _deliver(self, text: str) -> None:
        try:
            await self.submit(text)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("voice_submit_failed")

    def _arm(self, purpose: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self._cancel(purpose)
        self._timers[purpose] = asyncio.create_task(
            self._run_timer(purpose, delay, callback), name=f"voice-{purpose}"
        )

    async def _run_timer(
        self, purpose: str, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> None:
        await asyncio.sleep(delay)
        # Vacate the slot first so the callback may re-arm or cancel freely.
        if self._timers.get(purpose) is asyncio.current_task():
            del self._timers[purpose]
        await callback()

    def _cancel(self, purpose: str) -> None:
        task = self._timers.pop(purpose, None)
        if task is not None and not task.done():
            task.cancel()

    def _cancel_all_timers(self) -> None:
        for purpose in list(self._timers):
            self._cancel(purpose)

    async def _notify(self) -> None:
        for callback in self._change_callbacks:
            try:
                await callback(self)
            except Exception:
                logger.exception("voice_change_callback_error")
