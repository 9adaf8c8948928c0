"""Tests for the tutoring session orchestrator."""

import asyncio

import pytest

from math_tutor_client.errors import RateLimitedError, SessionStateError, StreamReadError
from math_tutor_client.models.scoring import TopicStats
from math_tutor_client.models.session import GuidanceMode, MessageRole, SessionPhase
from math_tutor_client.session.orchestrator import SessionOrchestrator
from conftest import sse_body

PROBLEM = "Solve x^3 + x = 2"
OPENING = ("[TOPIC: Algebra] ", "Let's start. ", "What is f(1)?")
FINISH = ("Correct! ", "Congratulations! ", "You've solved the problem.")


@pytest.fixture
def events():
    return []


@pytest.fixture
def orchestrator(gateway, repository, ledger, topics, user, events):
    orch = SessionOrchestrator(gateway, repository, ledger, topics)
    orch.set_user(user)

    async def record(event):
        events.append(event)

    orch.on("*", record)
    return orch


def of_type(events, event_type):
    return [e for e in events if e["type"] == event_type]


async def wait_until(condition):
    for _ in range(200):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


async def start_tutoring(orchestrator, gateway, mode=GuidanceMode.GUIDED):
    await orchestrator.select_mode(mode)
    gateway.queue(sse_body(*OPENING))
    assert await orchestrator.submit_problem(text=PROBLEM)


class TestCompletion:
    async def test_guided_problem_awards_full_points_once(
        self, orchestrator, gateway, ledger, topics, user, events
    ):
        await start_tutoring(orchestrator, gateway)
        assert orchestrator.session.topic == "Algebra"
        assert orchestrator.phase is SessionPhase.TUTORING

        gateway.queue(sse_body(*FINISH))
        assert await orchestrator.submit_answer("1")

        assert orchestrator.session.is_completed
        assert orchestrator.phase is SessionPhase.COMPLETED
        assert ledger.score_of(user.id) == 100

        celebrations = of_type(events, "celebration")
        assert len(celebrations) == 1
        assert celebrations[0]["points_earned"] == 100
        assert celebrations[0]["total_score"] == 100
        assert celebrations[0]["topic"] == "Algebra"
        assert topics.get_user_topic_stats(user.id) == [
            TopicStats(topic="Algebra", total_questions=1, correctly_answered=1)
        ]

    async def test_soft_problem_awards_half_points(self, orchestrator, gateway, ledger, user):
        await start_tutoring(orchestrator, gateway, GuidanceMode.SOFT)
        gateway.queue(sse_body("Excellent work!"))
        await orchestrator.submit_answer("1")
        assert ledger.score_of(user.id) == 50

    async def test_completed_session_rejects_answers(self, orchestrator, gateway):
        await start_tutoring(orchestrator, gateway)
        gateway.queue(sse_body(*FINISH))
        await orchestrator.submit_answer("1")
        with pytest.raises(SessionStateError):
            await orchestrator.submit_answer("again")

    async def test_completion_without_topic_skips_topic_stats(
        self, orchestrator, gateway, ledger, topics, user
    ):
        await orchestrator.select_mode(GuidanceMode.GUIDED)
        gateway.queue(sse_body("Congratulations, the problem is complete."))
        await orchestrator.submit_problem(text="1 + 1")
        assert ledger.score_of(user.id) == 100
        assert topics.get_user_topic_stats(user.id) == []


class TestStreaming:
    async def test_topic_registered_on_first_detection(
        self, orchestrator, gateway, topics, user, events
    ):
        await start_tutoring(orchestrator, gateway)
        assert topics.get_user_topic_stats(user.id) == [TopicStats(topic="Algebra")]
        assert [e["topic"] for e in of_type(events, "topic_detected")] == ["Algebra"]

        gateway.queue(sse_body("[TOPIC: Geometry] Next, factor."))
        await orchestrator.submit_answer("1")
        assert orchestrator.session.topic == "Algebra"
        assert len(of_type(events, "topic_detected")) == 1

    async def test_one_bot_message_per_response(self, orchestrator, gateway, repository):
        await start_tutoring(orchestrator, gateway)
        gateway.queue(sse_body("Good. ", "Now ", "divide."))
        await orchestrator.submit_answer("x = 1")

        stored = repository.get_session(orchestrator.session.id)
        roles = [m.role for m in stored.messages]
        assert roles == [
            MessageRole.STUDENT, MessageRole.BOT, MessageRole.STUDENT, MessageRole.BOT
        ]
        assert stored.messages[1].content == "".join(OPENING)
        assert stored.messages[3].content == "Good. Now divide."

    async def test_trailing_bot_message_is_extended(self, orchestrator, gateway, repository):
        await start_tutoring(orchestrator, gateway)
        session = orchestrator.session
        gateway.queue(sse_body(" Take your time."))
        await orchestrator._run_request(session)

        roles = [m.role for m in session.messages]
        assert roles == [MessageRole.STUDENT, MessageRole.BOT]
        assert session.messages[-1].content == "".join(OPENING) + " Take your time."

    async def test_delta_events_carry_accumulated_content(self, orchestrator, gateway, events):
        await start_tutoring(orchestrator, gateway)
        contents = [e["content"] for e in of_type(events, "delta")]
        assert contents[-1] == "".join(OPENING)
        assert len(of_type(events, "stream_done")) == 1

    async def test_text_problem_is_first_student_message(self, orchestrator, gateway):
        await start_tutoring(orchestrator, gateway)
        body = gateway.requests[0].to_body()
        assert body["messages"] == [{"role": "user", "content": PROBLEM}]
        assert body["imageBase64"] is None
        assert body["guidanceMode"] == "guided"

    async def test_image_problem_sends_image_with_every_turn(self, orchestrator, gateway):
        image = "data:image/png;base64,iVBORw0KGgo="
        await orchestrator.select_mode(GuidanceMode.SOFT)
        gateway.queue(sse_body("[TOPIC: Calculus] What is the derivative?"))
        await orchestrator.submit_problem(image_base64=image)
        gateway.queue(sse_body("Yes."))
        await orchestrator.submit_answer("2x")

        first, second = (r.to_body() for r in gateway.requests)
        assert first["messages"] == []
        assert first["imageBase64"] == image
        assert second["imageBase64"] == image
        assert [m["role"] for m in second["messages"]] == ["assistant", "user"]


class TestLoading:
    async def test_send_while_loading_is_rejected(self, orchestrator, gateway, events):
        await orchestrator.select_mode(GuidanceMode.GUIDED)
        release = asyncio.Event()
        gateway.queue(sse_body(*OPENING), release=release)
        task = asyncio.create_task(orchestrator.submit_problem(text=PROBLEM))
        await wait_until(lambda: orchestrator.is_loading)

        assert await orchestrator.submit_answer("1") is False
        assert len(gateway.requests) == 1

        release.set()
        assert await task
        assert not orchestrator.is_loading
        assert [e["loading"] for e in of_type(events, "loading")] == [True, False]

    async def test_gateway_error_clears_loading(self, orchestrator, gateway, events):
        await orchestrator.select_mode(GuidanceMode.GUIDED)
        gateway.queue(RateLimitedError())
        assert await orchestrator.submit_problem(text=PROBLEM) is False

        assert not orchestrator.is_loading
        errors = of_type(events, "error")
        assert errors == [{
            "type": "error",
            "error": "RateLimitedError",
            "message": "Rate limit exceeded. Please wait a moment and try again.",
        }]
        # The session survives; the student can retry.
        gateway.queue(sse_body("Hello"))
        assert await orchestrator.submit_answer("retry")

    async def test_interrupted_stream_is_not_a_user_error(self, orchestrator, gateway, events):
        await start_tutoring(orchestrator, gateway)
        gateway.queue(StreamReadError())
        assert await orchestrator.submit_answer("1") is False
        assert not orchestrator.is_loading
        assert of_type(events, "error") == []
        assert len(of_type(events, "stream_interrupted")) == 1


class TestStaleStreams:
    async def test_reset_discards_in_flight_response(
        self, orchestrator, gateway, repository, events
    ):
        await orchestrator.select_mode(GuidanceMode.GUIDED)
        release = asyncio.Event()
        gateway.queue(sse_body("[TOPIC: Algebra] ", *FINISH), release=release)
        stale = asyncio.create_task(orchestrator.submit_problem(text=PROBLEM))
        await wait_until(lambda: orchestrator.is_loading)
        stale_session_id = orchestrator.session.id

        await orchestrator.start_new_problem()
        assert orchestrator.phase is SessionPhase.PROBLEM_INTAKE
        assert not orchestrator.is_loading

        gateway.queue(sse_body("Fresh start."))
        assert await orchestrator.submit_problem(text="2 + 2")
        fresh = orchestrator.session

        release.set()
        await stale

        assert orchestrator.session is fresh
        assert [m.content for m in fresh.messages] == ["2 + 2", "Fresh start."]
        stored_stale = repository.get_session(stale_session_id)
        assert [m.role for m in stored_stale.messages] == [MessageRole.STUDENT]
        assert of_type(events, "celebration") == []
        assert not orchestrator.is_loading


class TestTransitions:
    async def test_mode_required_before_problem(self, orchestrator):
        with pytest.raises(SessionStateError):
            await orchestrator.submit_problem(text=PROBLEM)

    async def test_problem_needs_content(self, orchestrator):
        await orchestrator.select_mode(GuidanceMode.GUIDED)
        with pytest.raises(ValueError):
            await orchestrator.submit_problem(text="   ")

    async def test_answer_without_problem(self, orchestrator):
        with pytest.raises(SessionStateError):
            await orchestrator.submit_answer("42")
        assert await orchestrator.submit_answer("  ") is False

    async def test_mode_locked_while_tutoring(self, orchestrator, gateway):
        await start_tutoring(orchestrator, gateway)
        with pytest.raises(SessionStateError):
            await orchestrator.select_mode(GuidanceMode.SOFT)

    async def test_new_problem_keeps_mode(self, orchestrator, gateway, repository):
        await start_tutoring(orchestrator, gateway)
        await orchestrator.start_new_problem()
        assert orchestrator.guidance_mode is GuidanceMode.GUIDED
        assert orchestrator.session is None
        assert repository.get_current_session_id() is None

    async def test_end_session_forgets_mode(self, orchestrator, gateway, events):
        await start_tutoring(orchestrator, gateway)
        await orchestrator.end_session()
        assert orchestrator.phase is SessionPhase.MODE_SELECTION
        assert orchestrator.guidance_mode is None
        assert of_type(events, "phase")[-1] == {
            "type": "phase", "phase": "mode_selection", "guidance_mode": None
        }
        with pytest.raises(SessionStateError):
            await orchestrator.submit_problem(text=PROBLEM)


class TestPractice:
    async def test_practice_sends_flags(self, orchestrator, gateway, ledger, topics, user):
        await orchestrator.select_mode(GuidanceMode.SOFT)
        gateway.queue(sse_body("Here is a new one: 3x = 9. Excellent work!"))
        assert await orchestrator.start_practice("Linear Equations")

        body = gateway.requests[0].to_body()
        assert body["practiceMode"] is True
        assert body["practiceTopic"] == "Linear Equations"
        assert body["messages"] == []
        assert orchestrator.session.problem_text == "Practice: Linear Equations"
        # No tag in the response; the practice topic is credited.
        assert topics.get_user_topic_stats(user.id)[0].correctly_answered == 1
        assert ledger.score_of(user.id) == 50

    async def test_practice_similar_uses_detected_topic(self, orchestrator, gateway):
        await start_tutoring(orchestrator, gateway)
        gateway.queue(sse_body(*FINISH))
        await orchestrator.submit_answer("1")
        finished = orchestrator.session

        gateway.queue(sse_body("[TOPIC: Algebra] Try x^2 = 9."))
        assert await orchestrator.practice_similar()
        assert orchestrator.session.id != finished.id
        assert orchestrator.phase is SessionPhase.TUTORING
        assert gateway.requests[-1].practice_topic == "Algebra"

    async def test_practice_similar_needs_topic(self, orchestrator):
        with pytest.raises(SessionStateError):
            await orchestrator.practice_similar()


class TestResume:
    async def test_resume_restores_current_session(
        self, orchestrator, gateway, repository, ledger, topics
    ):
        await start_tutoring(orchestrator, gateway)
        session_id = orchestrator.session.id

        restored = SessionOrchestrator(gateway, repository, ledger, topics)
        session = await restored.resume()
        assert session.id == session_id
        assert restored.phase is SessionPhase.TUTORING
        assert restored.guidance_mode is GuidanceMode.GUIDED
        assert restored.detected_topic == "Algebra"
        assert len(restored.messages) == 2

    async def test_resume_without_session(self, gateway, repository, ledger, topics, user):
        repository.set_current_user(user.id)
        restored = SessionOrchestrator(gateway, repository, ledger, topics)
        assert await restored.resume() is None
        assert restored.user == user
        assert restored.phase is SessionPhase.MODE_SELECTION


class TestLoadingWindow:
    async def test_completion_runs_before_loading_clears(self, orchestrator, gateway, events):
        await start_tutoring(orchestrator, gateway)
        accepted = []
        seen = []

        async def late_answer(event):
            accepted.append(await orchestrator.submit_answer("late voice answer"))

        async def on_loading(event):
            if not event["loading"]:
                seen.append((orchestrator.phase, orchestrator.session.is_completed))

        orchestrator.on("stream_done", late_answer)
        orchestrator.on("loading", on_loading)
        gateway.queue(sse_body(*FINISH))
        await orchestrator.submit_answer("1")

        assert accepted == [False]
        assert seen[-1] == (SessionPhase.COMPLETED, True)
        assert orchestrator.session.messages[-1].content == "".join(FINISH)
        assert len(gateway.requests) == 2

    async def test_unexpected_error_clears_loading(
        self, gateway, repository, ledger, topics, user
    ):
        class BrokenClassifier:
            def detect_topic(self, text):
                return None

            def is_complete(self, text):
                raise RuntimeError("classifier down")

        orch = SessionOrchestrator(gateway, repository, ledger, topics, BrokenClassifier())
        orch.set_user(user)
        await orch.select_mode(GuidanceMode.GUIDED)
        gateway.queue(sse_body("Hello"))
        with pytest.raises(RuntimeError):
            await orch.submit_problem(text=PROBLEM)
        assert not orch.is_loading

    async def test_practice_similar_rejected_while_loading(self, orchestrator, gateway):
        await start_tutoring(orchestrator, gateway)
        release = asyncio.Event()
        gateway.queue(sse_body("Keep going."), release=release)
        task = asyncio.create_task(orchestrator.submit_answer("1"))
        await wait_until(lambda: orchestrator.is_loading)
        current = orchestrator.session

        assert await orchestrator.practice_similar() is False
        assert orchestrator.session is current
        assert orchestrator.is_loading

        release.set()
        assert await task
        assert len(gateway.requests) == 2
