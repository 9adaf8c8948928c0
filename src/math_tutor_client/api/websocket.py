"""Browser WebSocket handler - central hub connecting all components."""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from math_tutor_client.config import Settings
from math_tutor_client.errors import TutorError
from math_tutor_client.gateway.client import TutorGateway
from math_tutor_client.models.session import GuidanceMode, SessionPhase
from math_tutor_client.scoring.ledger import ScoreLedger
from math_tutor_client.scoring.topics import TopicTracker
from math_tutor_client.session.orchestrator import SessionOrchestrator
from math_tutor_client.storage.repository import TutorRepository
from math_tutor_client.voice.controller import VoiceSilenceController
from math_tutor_client.voice.speech import SpeechOutput, clean_text_for_speech

logger = structlog.get_logger()


class BrowserSpeech(SpeechOutput):
    """Speech synthesis runs in the browser; this tracks whether it is talking."""

    def __init__(self, send_fn):
        self._send = send_fn  # _send_to_browser
        self._speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def set_speaking(self, speaking: bool) -> None:
        self._speaking = speaking

    async def speak(self, text: str) -> None:
        cleaned = clean_text_for_speech(text)
        if not cleaned:
            return
        self._speaking = True
        await self._send({"type": "speak", "text": cleaned})

    async def stop(self) -> None:
        self._speaking = False
        await self._send({"type": "stop_speaking"})


class TutorConnection:
    """Wires one browser to an orchestrator and a voice controller.

    Args:
        settings: Application settings.
        browser_ws: WebSocket connection to the browser.
        repository: Shared persistence.
        gateway: Optional gateway client (built from settings otherwise).
    """

    def __init__(
        self,
        settings: Settings,
        browser_ws: WebSocket,
        repository: TutorRepository,
        gateway: TutorGateway | None = None,
    ):
        self.settings = settings
        self.browser_ws = browser_ws
        self.repository = repository
        self.gateway = gateway or TutorGateway(
            url=settings.gateway_url,
            api_key=settings.gateway_api_key,
            timeout=settings.request_timeout_seconds,
        )
        self.orchestrator = SessionOrchestrator(
            gateway=self.gateway,
            repository=repository,
            ledger=ScoreLedger(repository),
            topics=TopicTracker(repository),
            guided_points=settings.guided_points,
            soft_points=settings.soft_points,
            max_continuation_lines=settings.max_continuation_lines,
        )
        self.speech = BrowserSpeech(self._send_to_browser)
        self.voice = VoiceSilenceController(
            submit=self._submit_text,
            is_busy=self._is_busy,
            max_listen_seconds=settings.max_listen_seconds,
            silence_timeout_seconds=settings.silence_timeout_seconds,
            submit_delay_seconds=settings.voice_submit_delay_seconds,
        )
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Register relays and restore any persisted session."""
        self.orchestrator.on("*", self._send_to_browser)
        self.orchestrator.on("stream_done", self._on_stream_done)
        self.voice.on_change(self._on_voice_change)
        await self.orchestrator.resume()
        await self._send_state()

    async def stop(self) -> None:
        await self.voice.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.gateway.aclose()

    async def handle(self, data: dict) -> None:
        """Dispatch one browser message."""
        msg_type = data.get("type", "")
        orchestrator = self.orchestrator
        try:
            if msg_type == "identify":
                self._identify(data)
                await self._send_state()
            elif msg_type == "select_mode":
                await orchestrator.select_mode(GuidanceMode(data.get("mode", "")))
            elif msg_type == "submit_problem":
                self._spawn(orchestrator.submit_problem(
                    image_base64=data.get("imageBase64"), text=data.get("text")
                ))
            elif msg_type == "submit_answer":
                self._spawn(orchestrator.submit_answer(data.get("text", "")))
            elif msg_type == "start_practice":
                self._spawn(orchestrator.start_practice(data.get("topic", "")))
            elif msg_type == "practice_similar":
                self._spawn(orchestrator.practice_similar())
            elif msg_type == "new_problem":
                await orchestrator.start_new_problem()
            elif msg_type == "end_session":
                await self.voice.set_hands_free(False)
                await orchestrator.end_session()
            elif msg_type == "start_listening":
                await self.voice.start_listening()
            elif msg_type == "stop_listening":
                await self.voice.stop_listening()
            elif msg_type == "speech_result":
                await self.voice.on_speech(data.get("text", ""), bool(data.get("isFinal")))
            elif msg_type == "set_hands_free":
                await self.voice.set_hands_free(bool(data.get("enabled")))
            elif msg_type == "submit_voice":
                self._spawn(self.voice.submit_transcript())
            elif msg_type == "speaking":
                self.speech.set_speaking(bool(data.get("speaking")))
            else:
                logger.warning("unknown_browser_message", msg_type=msg_type)
        except (TutorError, ValueError) as e:
            await self._send_error(e)

    def _identify(self, data: dict) -> None:
        user = None
        if data.get("userId"):
            user = self.repository.get_user(data["userId"])
        elif data.get("name"):
            user = self.repository.create_user(data["name"].strip())
        if user is None:
            raise ValueError("Unknown user")
        self.orchestrator.set_user(user)

    async def _submit_text(self, text: str) -> None:
        if self.orchestrator.phase is SessionPhase.TUTORING:
            await self.orchestrator.submit_answer(text)
        else:
            await self.orchestrator.submit_problem(text=text)

    def _is_busy(self) -> bool:
        return self.orchestrator.is_loading or self.speech.is_speaking

    async def _on_stream_done(self, event: dict) -> None:
        if self.voice.hands_free and event.get("content"):
            await self.speech.speak(event["content"])

    async def _on_voice_change(self, voice: VoiceSilenceController) -> None:
        await self._send_to_browser({
            "type": "voice_state",
            "phase": voice.phase.value,
            "listening": voice.is_listening,
            "handsFree": voice.hands_free,
            "transcript": voice.transcript,
        })

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        # Streaming requests run beside the receive loop.
        task = asyncio.create_task(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except (TutorError, ValueError) as e:
            await self._send_error(e)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("browser_action_failed")

    async def _send_state(self) -> None:
        orchestrator = self.orchestrator
        session = orchestrator.session
        await self._send_to_browser({
            "type": "state",
            "user": orchestrator.user.to_store() if orchestrator.user else None,
            "phase": orchestrator.phase.value,
            "guidanceMode": orchestrator.guidance_mode.value if orchestrator.guidance_mode else None,
            "session": session.to_store() if session else None,
            "loading": orchestrator.is_loading,
        })

    async def _send_error(self, error: Exception) -> None:
        await self._send_to_browser({
            "type": "error",
            "error": type(error).__name__,
            "message": str(error),
        })

    async def _send_to_browser(self, data: dict) -> None:
        """Send a message to the browser WebSocket."""
        try:
            await self.browser_ws.send_json(data)
        except Exception:
            logger.warning("browser_send_failed")


async def handle_browser_websocket(
    websocket: WebSocket, settings: Settings, repository: TutorRepository
) -> None:
    """Handle a browser WebSocket connection."""
    await websocket.accept()
    connection = TutorConnection(settings, websocket, repository)

    try:
        await connection.start()
        while True:
            data = await websocket.receive_json()
            await connection.handle(data)

    except WebSocketDisconnect:
        logger.info("browser_disconnected")
    except Exception:
        logger.exception("websocket_handler_error")
    finally:
        await connection.stop()
