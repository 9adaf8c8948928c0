"""Tutoring session lifecycle: mode selection, streaming turns, completion scoring."""

import contextlib
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import structlog

from math_tutor_client.conversation.classifier import MarkerClassifier, ResponseClassifier
from math_tutor_client.errors import GatewayError, SessionStateError, StreamReadError
from math_tutor_client.gateway.client import TutorGateway
from math_tutor_client.gateway.requests import build_chat_request
from math_tutor_client.models.scoring import Celebration
from math_tutor_client.models.session import (
    ChatMessage,
    ChatSession,
    GuidanceMode,
    MessageRole,
    SessionPhase,
    User,
)
from math_tutor_client.scoring.ledger import ScoreLedger
from math_tutor_client.scoring.topics import TopicTracker
from math_tutor_client.storage.repository import TutorRepository
from math_tutor_client.streaming.decoder import decode_stream

logger = structlog.get_logger()

# Type alias for event handler callbacks
EventHandler = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]


@dataclass
class _ResponseStream:
    """One in-flight request and the bot message it streams into."""

    session: ChatSession
    token: str
    text: str = ""
    base: str = ""
    message: ChatMessage | None = None


class SessionOrchestrator:
    """Drives one user's tutoring sessions against the gateway.

    Phases: mode_selection -> problem_intake -> tutoring -> completed. Only
    one request is in flight at a time; the loading flag is the mutex.

    Args:
        gateway: Streaming gateway client.
        repository: Persistence for sessions and pointers.
        ledger: Leaderboard score awards.
        topics: Per-topic counters.
        classifier: Topic/completion marker detection.
        guided_points: Points for completing a guided-mode problem.
        soft_points: Points for completing a soft-mode problem.
        max_continuation_lines: Passed to the stream decoder.
    """

    def __init__(
        self,
        gateway: TutorGateway,
        repository: TutorRepository,
        ledger: ScoreLedger,
        topics: TopicTracker,
        classifier: ResponseClassifier | None = None,
        guided_points: int = 100,
        soft_points: int = 50,
        max_continuation_lines: int = 4,
    ):
        self.gateway = gateway
        self.repository = repository
        self.ledger = ledger
        self.topics = topics
        self.classifier = classifier or MarkerClassifier()
        self.points = {GuidanceMode.GUIDED: guided_points, GuidanceMode.SOFT: soft_points}
        self.max_continuation_lines = max_continuation_lines

        self.user: User | None = None
        self.guidance_mode: GuidanceMode | None = None
        self.session: ChatSession | None = None
        self.image_base64: str | None = None
        self.detected_topic: str | None = None
        self._practice_topic: str | None = None
        self._phase = SessionPhase.MODE_SELECTION
        self._loading_token: str | None = None
        self._event_handlers: dict[str, list[EventHandler]] = {}

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_loading(self) -> bool:
        return self._loading_token is not None

    @property
    def messages(self) -> list[ChatMessage]:
        return self.session.messages if self.session else []

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register an async handler for an event type ("*" receives all)."""
        self._event_handlers.setdefault(event_type, []).append(handler)

    def set_user(self, user: User) -> None:
        self.user = user
        self.repository.set_current_user(user.id)

    async def resume(self) -> ChatSession | None:
        """Restore the persisted current user and session, if any."""
        user = self.repository.get_current_user()
        if user is None:
            return None
        self.user = user
        session_id = self.repository.get_current_session_id()
        session = self.repository.get_session(session_id) if session_id else None
        if session is None or session.user_id != user.id:
            return None

        self.session = session
        self.guidance_mode = session.guidance_mode
        self.image_base64 = session.problem_image_url or None
        self.detected_topic = session.topic
        phase = SessionPhase.COMPLETED if session.is_completed else SessionPhase.TUTORING
        await self._set_phase(phase)
        logger.info("session_resumed", session_id=session.id, phase=phase.value)
        return session

    async def select_mode(self, mode: GuidanceMode) -> None:
        """Choose the guidance mode; required before any problem starts."""
        if self._phase not in (SessionPhase.MODE_SELECTION, SessionPhase.PROBLEM_INTAKE):
            raise SessionStateError("Guidance mode can only be chosen before a problem starts")
        self.guidance_mode = GuidanceMode(mode)
        logger.info("guidance_mode_selected", mode=self.guidance_mode.value)
        await self._set_phase(SessionPhase.PROBLEM_INTAKE)

    async def submit_problem(
        self, image_base64: str | None = None, text: str | None = None
    ) -> bool:
        """Start a new session from an image or a typed problem statement.

        Returns:
            False if a request is already in flight, otherwise whether the
            first response streamed successfully.
        """
        user = self._require_ready()
        text = (text or "").strip()
        if not image_base64 and not text:
            raise ValueError("a problem needs an image or a text statement")
        if self.is_loading:
            logger.warning("send_rejected_busy", action="submit_problem")
            return False

        session = ChatSession(
            user_id=user.id,
            problem_text=text,
            problem_image_url=image_base64 or "",
            guidance_mode=self.guidance_mode,
        )
        if text:
            session.append_message(MessageRole.STUDENT, text)
        await self._begin_session(session, image_base64=image_base64)
        return await self._run_request(session)

    async def start_practice(self, topic: str) -> bool:
        """Start a session seeded from a previously seen topic."""
        user = self._require_ready()
        topic = topic.strip()
        if not topic:
            raise ValueError("practice topic must not be empty")
        if self.is_loading:
            logger.warning("send_rejected_busy", action="start_practice")
            return False

        session = ChatSession(
            user_id=user.id,
            problem_text=f"Practice: {topic}",
            guidance_mode=self.guidance_mode,
        )
        await self._begin_session(session, practice_topic=topic)
        return await self._run_request(session, practice_topic=topic)

    async def submit_answer(self, text: str) -> bool:
        """Send a student message in the current session."""
        text = text.strip()
        if not text:
            return False
        if self._phase is not SessionPhase.TUTORING or self.session is None:
            raise SessionStateError("There is no problem in progress")
        if self.is_loading:
            logger.warning("send_rejected_busy", action="submit_answer")
            return False

        session = self.session
        message = session.append_message(MessageRole.STUDENT, text)
        self.repository.update_session(session)
        await self._emit("message", session_id=session.id, message=message.to_store())
        return await self._run_request(session)

    async def start_new_problem(self) -> None:
        """Back to problem intake, keeping the guidance mode."""
        self._clear_working_state()
        await self._set_phase(
            SessionPhase.PROBLEM_INTAKE if self.guidance_mode else SessionPhase.MODE_SELECTION
        )

    async def reset(self) -> None:
        await self.start_new_problem()

    async def practice_similar(self) -> bool:
        """Start a practice session on the topic of the previous problem."""
        topic = self.detected_topic
        if not topic:
            raise SessionStateError("No topic was detected for the previous problem")
        if self.is_loading:
            logger.warning("send_rejected_busy", action="practice_similar")
            return False
        self._clear_working_state()
        return await self.start_practice(topic)

    async def end_session(self) -> None:
        """Leave tutoring entirely, forgetting the guidance mode."""
        self._clear_working_state()
        self.guidance_mode = None
        await self._set_phase(SessionPhase.MODE_SELECTION)

    def _require_ready(self) -> User:
        if self.user is None:
            raise SessionStateError("No user is set")
        if self.guidance_mode is None:
            raise SessionStateError("Choose a guidance mode first")
        return self.user

    def _clear_working_state(self) -> None:
        # An in-flight stream keeps running but is discarded on arrival.
        if self.session is not None:
            logger.info("session_cleared", session_id=self.session.id)
        self.session = None
        self.image_base64 = None
        self.detected_topic = None
        self._practice_topic = None
        self._loading_token = None
        self.repository.set_current_session_id(None)

    async def _begin_session(
        self,
        session: ChatSession,
        image_base64: str | None = None,
        practice_topic: str | None = None,
    ) -> None:
        self.session = session
        self.image_base64 = image_base64
        self.detected_topic = practice_topic
        self._practice_topic = practice_topic
        self.repository.create_session(session)
        self.repository.set_current_session_id(session.id)
        logger.info(
            "session_started",
            session_id=session.id,
            mode=session.guidance_mode.value,
            practice_topic=practice_topic,
            has_image=image_base64 is not None,
        )
        await self._set_phase(SessionPhase.TUTORING)

    def _is_current(self, session_id: str) -> bool:
        return self.session is not None and self.session.id == session_id

    async def _run_request(self, session: ChatSession, practice_topic: str | None = None) -> bool:
        stream = _ResponseStream(session=session, token=str(uuid.uuid4()))
        self._loading_token = stream.token
        await self._emit("loading", loading=True)

        request = build_chat_request(
            session.messages,
            session.guidance_mode,
            image_base64=self.image_base64,
            practice_topic=practice_topic,
        )

        async def on_delta(delta: str) -> None:
            await self._apply_delta(stream, delta)

        async def on_done() -> None:
            # Completion effects run while the request still holds the loading token.
            await self._finish_response(stream)

        try:
            async with contextlib.aclosing(self.gateway.stream_chat(request)) as chunks:
                await decode_stream(
                    chunks,
                    on_delta,
                    on_done,
                    max_continuation_lines=self.max_continuation_lines,
                )
        except GatewayError as e:
            logger.warning(
                "request_failed",
                session_id=session.id,
                error_type=type(e).__name__,
                status=e.status_code,
            )
            await self._emit("error", error=type(e).__name__, message=str(e))
            return False
        except StreamReadError:
            logger.exception("stream_interrupted", session_id=session.id)
            await self._emit(
                "stream_interrupted", session_id=session.id, content=stream.text
            )
            return False
        finally:
            await self._release(stream.token)
        return True

    async def _release(self, token: str) -> None:
        # A stale stream must not clear the flag of a newer request.
        if self._loading_token == token:
            self._loading_token = None
            await self._emit("loading", loading=False)

    async def _apply_delta(self, stream: _ResponseStream, delta: str) -> None:
        session = stream.session
        if not self._is_current(session.id):
            logger.debug("stale_delta_discarded", session_id=session.id)
            return

        stream.text += delta
        if stream.message is None:
            last = session.last_message
            if last is not None and last.role is MessageRole.BOT:
                # Never two adjacent bot messages
                stream.message = last
                stream.base = last.content
            else:
                stream.message = session.append_message(MessageRole.BOT)
                await self._emit(
                    "message", session_id=session.id, message=stream.message.to_store()
                )
        stream.message.content = stream.base + stream.text
        self.repository.update_session(session)
        await self._emit(
            "delta",
            session_id=session.id,
            message_id=stream.message.id,
            delta=delta,
            content=stream.message.content,
        )
        await self._detect_topic(session, stream.text)

    async def _detect_topic(self, session: ChatSession, text: str) -> None:
        if session.topic is not None:
            return
        topic = self.classifier.detect_topic(text)
        if topic is None or not session.set_topic(topic):
            return
        self.detected_topic = session.topic
        self.repository.update_session(session)
        if self.user is not None:
            self.topics.update_topic_stats(
                self.user.id, session.topic, is_correct=False, register_only=True
            )
        logger.info("topic_detected", session_id=session.id, topic=session.topic)
        await self._emit("topic_detected", session_id=session.id, topic=session.topic)

    async def _finish_response(self, stream: _ResponseStream) -> None:
        session = stream.session
        if not self._is_current(session.id):
            logger.info("stale_stream_discarded", session_id=session.id)
            return

        await self._emit(
            "stream_done",
            session_id=session.id,
            message_id=stream.message.id if stream.message else None,
            content=stream.text,
        )
        if session.is_completed or not self.classifier.is_complete(stream.text):
            return
        await self._complete(session)

    async def _complete(self, session: ChatSession) -> None:
        user = self.user
        points = self.points[session.guidance_mode]
        result = self.ledger.add_score(user.id, user.name, points)
        topic = session.topic or self._practice_topic
        if topic:
            self.topics.update_topic_stats(user.id, topic, is_correct=True)

        session.is_completed = True
        self.repository.update_session(session)
        await self._set_phase(SessionPhase.COMPLETED)

        celebration = Celebration(
            session_id=session.id,
            points_earned=points,
            previous_rank=result.previous_rank,
            new_rank=result.new_rank,
            total_score=result.total_score,
            topic=topic,
        )
        logger.info(
            "session_completed",
            session_id=session.id,
            points=points,
            previous_rank=result.previous_rank,
            new_rank=result.new_rank,
        )
        await self._emit(
            "celebration",
            **celebration.model_dump(),
            rank_improved=celebration.rank_improved,
        )
        await self._emit("session_completed", session_id=session.id, topic=topic)

    async def _set_phase(self, phase: SessionPhase) -> None:
        if phase is self._phase:
            return
        self._phase = phase
        await self._emit(
            "phase",
            phase=phase.value,
            guidance_mode=self.guidance_mode.value if self.guidance_mode else None,
        )

    async def _emit(self, event_type: str, **payload: Any) -> None:
        """Dispatch an event to registered handlers."""
        event = {"type": event_type, **payload}
        handlers = self._event_handlers.get(event_type, []) + self._event_handlers.get("*", [])
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("event_handler_error", event_type=event_type)
