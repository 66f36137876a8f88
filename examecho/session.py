"""
Session state machine.

    acquiring ──submit──▶ busy(notes/topics) ──▶ previewing ──configure──▶ configuring
        ▲                                                                    │
        │                                                           start_practice
      reset                                                                  ▼
        │          reviewing ◀── busy(grading) ◀──end_session── attempting ◀── busy(quiz)
        │
    browsing_history (view_history from anywhere, close_history → acquiring)

The controller owns one immutable ``SessionState`` and replaces it on every
transition. Inference-bearing transitions all go through ``_advance``:
enter busy keeping the prior state, await the call, then either commit the
result or restore the prior state with a notice. A call whose session was
abandoned (``reset``/``view_history``) has its outcome discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from examecho.errors import (
    IngestionError,
    InferenceError,
    InvalidTransitionError,
    RateLimitedError,
)
from examecho.examiner import Examiner
from examecho.history import HistoryStore, SqliteSlotBackend
from examecho.models import (
    WHOLE_CONTENT,
    BusyStage,
    Difficulty,
    DocumentSource,
    EvaluationResult,
    HistoryEntry,
    Quiz,
    QuestionFormat,
    SessionConfig,
    Step,
    SynthesizedSource,
)

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

_NO_ANSWERS: Mapping[int, str] = MappingProxyType({})

_FAILURE_NOTICES: dict[BusyStage, str] = {
    BusyStage.DRAFTING_NOTES: "Could not draft study notes for this topic. Please try again.",
    BusyStage.DETECTING_TOPICS: "Deep analysis failed. Try a standard PDF or another topic.",
    BusyStage.GENERATING_QUIZ: "Quiz generation failed. Adjust the settings and try again.",
    BusyStage.GRADING: "Grading failed. Your answers are safe; please submit again.",
}

_RATE_LIMIT_NOTICE = "The service is busy right now. Please wait 20-60 seconds and try again."


def _notice_for(stage: BusyStage, exc: Exception) -> str:
    if isinstance(exc, RateLimitedError):
        return _RATE_LIMIT_NOTICE
    return _FAILURE_NOTICES[stage]


# ── State values ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SessionState:
    """Everything the controller knows about the current session."""

    step: Step = Step.ACQUIRING
    busy_stage: BusyStage | None = None
    source: DocumentSource | SynthesizedSource | None = None
    topics: tuple[str, ...] = ()
    config: SessionConfig | None = None
    quiz: Quiz | None = None
    answers: Mapping[int, str] = field(default_factory=lambda: _NO_ANSWERS)
    evaluation: EvaluationResult | None = None
    history_entry_id: str | None = None
    #: Last user-facing message (failure or warning); cleared on the next busy step.
    notice: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.step is Step.BUSY

    @property
    def status_message(self) -> str | None:
        return self.busy_stage.message if self.busy_stage else None

    def with_answer(self, question_id: int, answer: str) -> SessionState:
        answers = dict(self.answers)
        answers[question_id] = answer
        return replace(self, answers=MappingProxyType(answers))


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a state-machine operation.

    ``error`` is set when the operation failed and the session was rolled
    back; ``discarded`` is set when the session was abandoned while the
    call was in flight and its outcome was ignored.
    """

    state: SessionState
    error: Exception | None = None
    discarded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.discarded


# ── Controller ─────────────────────────────────────────────────────────────


class SessionController:
    """Drives one user's practice session from source material to graded review."""

    def __init__(self, examiner: Examiner, history: HistoryStore) -> None:
        self.examiner = examiner
        self.history = history
        self._state = SessionState()
        self._epoch = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionController:
        """Wire a controller to the real inference service and SQLite history."""
        history = HistoryStore(
            SqliteSlotBackend(settings.history_path),
            limit=settings.history_limit,
        )
        return cls(Examiner(settings), history)

    @property
    def state(self) -> SessionState:
        return self._state

    # ── Source acquisition ─────────────────────────────────────────────────

    async def submit_document(
        self,
        payload: bytes,
        media_type: str,
        name: str,
    ) -> TransitionResult:
        """Ingest an uploaded document and detect its topics.

        Args:
            payload: Raw file bytes.
            media_type: MIME type reported by the upload.
            name: Original file name, shown as the document title.

        Returns:
            A TransitionResult; on success the session is previewing.
        """
        self._require("submit a document", Step.ACQUIRING)
        try:
            source = DocumentSource.from_upload(payload, media_type, name)
        except IngestionError as exc:
            return self._reject(exc)

        return await self._advance(
            BusyStage.DETECTING_TOPICS,
            call=lambda token: self.examiner.detect_topics(source),
            commit=lambda topics: self._previewing(source, topics),
        )

    async def submit_topic(self, topic: str) -> TransitionResult:
        """Draft study notes for *topic*, then detect topics in those notes."""
        self._require("submit a topic", Step.ACQUIRING)
        topic = topic.strip()
        if not topic:
            return self._reject(IngestionError("Enter an academic topic or subject."))

        async def draft_and_detect(token: int) -> tuple[SynthesizedSource, list[str]]:
            body = await self.examiner.draft_notes(topic)
            source = SynthesizedSource(topic=topic, body=body)
            self._mark_busy(BusyStage.DETECTING_TOPICS, token)
            return source, await self.examiner.detect_topics(source)

        return await self._advance(
            BusyStage.DRAFTING_NOTES,
            call=draft_and_detect,
            commit=lambda result: self._previewing(*result),
        )

    def _previewing(
        self,
        source: DocumentSource | SynthesizedSource,
        topics: list[str],
    ) -> SessionState:
        return SessionState(
            step=Step.PREVIEWING,
            source=source,
            topics=(WHOLE_CONTENT, *topics),
        )

    # ── Configuration and quiz ─────────────────────────────────────────────

    def configure(self) -> SessionState:
        """Move from the source preview to quiz configuration."""
        self._require("configure the session", Step.PREVIEWING)
        self._state = replace(self._state, step=Step.CONFIGURING, notice=None)
        return self._state

    async def start_practice(
        self,
        topic: str = WHOLE_CONTENT,
        question_format: QuestionFormat = QuestionFormat.OBJECTIVE,
        count: int = 5,
        difficulty: Difficulty = Difficulty.STANDARD,
    ) -> TransitionResult:
        """Request a quiz for the chosen topic and settings.

        Args:
            topic: A label from the session's topics, "Whole Content" by default.
            question_format: Objective (A-D) or open-ended questions.
            count: Number of questions, one of 5, 10 or 15.
            difficulty: Standard, advanced or expert.

        Raises:
            InvalidTransitionError: If the session is not being configured.
            ValueError: If the settings are invalid or *topic* was not detected.
        """
        self._require("start practice", Step.CONFIGURING)
        config = SessionConfig(
            question_format=question_format,
            count=count,
            difficulty=difficulty,
            topic=topic,
        )
        if config.topic not in self._state.topics:
            raise ValueError(f"Unknown topic {config.topic!r}")
        source = self._state.source

        return await self._advance(
            BusyStage.GENERATING_QUIZ,
            call=lambda token: self.examiner.generate_quiz(source, config),
            commit=lambda quiz: replace(
                self._state,
                step=Step.ATTEMPTING,
                busy_stage=None,
                config=config,
                quiz=quiz,
                answers=_NO_ANSWERS,
                evaluation=None,
            ),
        )

    def record_answer(self, question_id: int, answer: str) -> SessionState:
        """Set (or replace) the answer to one question. Never calls the service.

        Args:
            question_id: Id of a question in the current quiz.
            answer: A choice label for objective questions, free text otherwise.

        Raises:
            ValueError: If the quiz has no such question.
        """
        self._require("record an answer", Step.ATTEMPTING)
        if question_id not in self._state.quiz.question_ids:
            raise ValueError(f"Quiz has no question {question_id}")
        self._state = self._state.with_answer(question_id, answer)
        return self._state

    # ── Grading ────────────────────────────────────────────────────────────

    async def end_session(self) -> TransitionResult:
        """Grade the recorded answers and store the result in history."""
        self._require("end the session", Step.ATTEMPTING)
        if not self._state.answers:
            raise InvalidTransitionError("Answer at least one question before ending the session.")
        quiz = self._state.quiz
        answers = dict(self._state.answers)

        return await self._advance(
            BusyStage.GRADING,
            call=lambda token: self.examiner.evaluate(quiz, answers),
            commit=self._graded,
        )

    def _graded(self, evaluation: EvaluationResult) -> SessionState:
        state = replace(
            self._state,
            step=Step.REVIEWING,
            busy_stage=None,
            evaluation=evaluation,
        )
        try:
            entry = self.history.append(evaluation, state.quiz)
        except Exception:
            logger.exception("Could not save graded session to history")
            return replace(state, notice="This session could not be saved to history.")
        return replace(state, history_entry_id=entry.id)

    # ── Reset and history ──────────────────────────────────────────────────

    def reset(self) -> SessionState:
        """Discard the session and return to source acquisition."""
        self._abandon()
        self._state = SessionState()
        return self._state

    def view_history(self) -> list[HistoryEntry]:
        """Leave the current session and browse past results."""
        self._abandon()
        self._state = SessionState(step=Step.BROWSING_HISTORY)
        return self.history.load()

    def open_entry(self, entry_id: str) -> SessionState:
        """Show a stored quiz and its audit in the review step."""
        self._require("open a history entry", Step.BROWSING_HISTORY)
        entry = self.history.get(entry_id)
        if entry is None:
            raise ValueError(f"No history entry {entry_id!r}")
        self._state = SessionState(
            step=Step.REVIEWING,
            quiz=entry.quiz,
            evaluation=entry.results,
            history_entry_id=entry.id,
        )
        return self._state

    def close_history(self) -> SessionState:
        self._require("close history", Step.BROWSING_HISTORY)
        self._state = SessionState()
        return self._state

    # ── Internals ──────────────────────────────────────────────────────────

    def _require(self, action: str, *steps: Step) -> None:
        step = self._state.step
        if step not in steps:
            raise InvalidTransitionError(f"Cannot {action} while {step.value}.")

    def _reject(self, exc: IngestionError) -> TransitionResult:
        logger.warning("Ingestion failed: %s", exc)
        self._state = replace(self._state, notice=str(exc))
        return TransitionResult(self._state, error=exc)

    def _abandon(self) -> None:
        if self._state.is_busy:
            logger.info("Abandoning in-flight %s call", self._state.busy_stage.value)
        self._epoch += 1

    def _is_current(self, token: int) -> bool:
        return token == self._epoch

    def _mark_busy(self, stage: BusyStage, token: int) -> None:
        if self._is_current(token):
            self._state = replace(self._state, busy_stage=stage)

    async def _advance(
        self,
        stage: BusyStage,
        call: Callable[[int], Awaitable[Any]],
        commit: Callable[[Any], SessionState],
    ) -> TransitionResult:
        """Run one inference-bearing transition with rollback on failure."""
        prior = self._state
        self._epoch += 1
        token = self._epoch
        self._state = replace(prior, step=Step.BUSY, busy_stage=stage, notice=None)

        try:
            value = await call(token)
        except asyncio.CancelledError:
            if self._is_current(token):
                logger.info("%s call cancelled", stage.value)
                self._state = prior
            raise
        except Exception as exc:
            if not self._is_current(token):
                logger.info("Discarding failed %s result from abandoned session", stage.value)
                return TransitionResult(self._state, discarded=True)
            if isinstance(exc, InferenceError):
                logger.warning("%s failed: %s", stage.value, exc)
            else:
                logger.exception("Unexpected failure during %s", stage.value)
            self._state = replace(prior, notice=_notice_for(stage, exc))
            return TransitionResult(self._state, error=exc)

        if not self._is_current(token):
            logger.info("Discarding late %s result from abandoned session", stage.value)
            return TransitionResult(self._state, discarded=True)
        self._state = commit(value)
        return TransitionResult(self._state)
