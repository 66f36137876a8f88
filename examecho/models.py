"""
Pydantic models shared across the ExamEcho core.

The quiz and evaluation models double as response schemas: the inference
client validates every reply against one of them before it reaches the
session controller.
"""

from __future__ import annotations

import mimetypes
import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from examecho.errors import IngestionError

#: Synthetic label that always heads a TopicSet and means "the whole source".
WHOLE_CONTENT = "Whole Content"
#: Maximum number of detected topics kept after the whole-content label.
MAX_DETECTED_TOPICS = 5
#: Question counts a session may request.
ALLOWED_COUNTS: tuple[int, ...] = (5, 10, 15)
#: Choice labels of an objective question, in display order.
CHOICE_LABELS: tuple[str, ...] = ("A", "B", "C", "D")
#: Title used for history entries whose quiz carries none.
DEFAULT_TITLE = "Revision Session"

#: Media types the inference service accepts as document input.
SUPPORTED_MEDIA_TYPES: frozenset[str] = frozenset([
    "application/pdf",
    "text/plain",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
])


# ── Enums ──────────────────────────────────────────────────────────────────


class Step(str, Enum):
    """The user-facing step a session is in."""

    ACQUIRING = "acquiring"
    PREVIEWING = "previewing"
    CONFIGURING = "configuring"
    BUSY = "busy"
    ATTEMPTING = "attempting"
    REVIEWING = "reviewing"
    BROWSING_HISTORY = "browsing_history"


class BusyStage(str, Enum):
    """Which inference stage a busy session is waiting on."""

    DRAFTING_NOTES = "drafting_notes"
    DETECTING_TOPICS = "detecting_topics"
    GENERATING_QUIZ = "generating_quiz"
    GRADING = "grading"

    @property
    def message(self) -> str:
        return _BUSY_MESSAGES[self]


_BUSY_MESSAGES: dict[BusyStage, str] = {
    BusyStage.DRAFTING_NOTES: "Synthesizing expert module...",
    BusyStage.DETECTING_TOPICS: "Analyzing and indexing material...",
    BusyStage.GENERATING_QUIZ: "Constructing grounded quiz questions...",
    BusyStage.GRADING: "Performing cognitive audit...",
}


class QuestionFormat(str, Enum):
    OBJECTIVE = "objective"
    OPEN_ENDED = "open-ended"

    @classmethod
    def coerce(cls, value: object) -> object:
        """Map exam-paper vocabulary ("MCQ", "Subjective") onto a format value."""
        if not isinstance(value, str):
            return value
        key = value.strip().lower()
        return _FORMAT_ALIASES.get(key, key)


_FORMAT_ALIASES: dict[str, str] = {
    "mcq": "objective",
    "multiple choice": "objective",
    "subjective": "open-ended",
    "open ended": "open-ended",
    "open_ended": "open-ended",
}


class Difficulty(str, Enum):
    """Difficulty tier, ordered ``standard < advanced < expert``."""

    STANDARD = "standard"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return list(Difficulty).index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Difficulty):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Difficulty):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Difficulty):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Difficulty):
            return NotImplemented
        return self.rank >= other.rank


# ── Sources ────────────────────────────────────────────────────────────────


class DocumentSource(BaseModel):
    """An uploaded document sent to the service as-is."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["document"] = "document"
    payload: bytes = Field(repr=False)
    media_type: str
    name: str

    @field_validator("payload")
    @classmethod
    def _payload_not_empty(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("document is empty")
        return value

    @field_validator("media_type")
    @classmethod
    def _media_type_supported(cls, value: str) -> str:
        value = value.split(";", 1)[0].strip().lower()
        if value not in SUPPORTED_MEDIA_TYPES:
            raise ValueError(f"unsupported media type {value!r}")
        return value

    @classmethod
    def from_upload(cls, payload: bytes, media_type: str, name: str) -> DocumentSource:
        """Build a document source, reporting bad input as ``IngestionError``."""
        try:
            return cls(payload=payload, media_type=media_type, name=name)
        except ValidationError as exc:
            reasons = "; ".join(err["msg"] for err in exc.errors())
            raise IngestionError(f"Could not ingest {name!r}: {reasons}") from exc

    @classmethod
    def from_path(cls, path: str | Path) -> DocumentSource:
        """Read a document from disk, guessing its media type from the file name."""
        path = Path(path)
        media_type, _ = mimetypes.guess_type(path.name)
        try:
            payload = path.read_bytes()
        except OSError as exc:
            raise IngestionError(f"Could not read {path}: {exc}") from exc
        return cls.from_upload(payload, media_type or "application/octet-stream", path.name)


class SynthesizedSource(BaseModel):
    """Study notes drafted by the service for a free-text topic."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["synthesized"] = "synthesized"
    topic: str = Field(min_length=1)
    body: str


Source = Annotated[DocumentSource | SynthesizedSource, Field(discriminator="kind")]


# ── Session configuration ──────────────────────────────────────────────────


class SessionConfig(BaseModel):
    """Parameters of one quiz request."""

    model_config = ConfigDict(frozen=True)

    question_format: QuestionFormat = QuestionFormat.OBJECTIVE
    count: int = 5
    difficulty: Difficulty = Difficulty.STANDARD
    topic: str = WHOLE_CONTENT

    @field_validator("count")
    @classmethod
    def _count_allowed(cls, value: int) -> int:
        if value not in ALLOWED_COUNTS:
            raise ValueError(f"count must be one of {ALLOWED_COUNTS}")
        return value

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("topic must not be empty")
        return value


# ── Response schemas ───────────────────────────────────────────────────────

_LABEL_RE = re.compile(r"^\s*\(?([A-Da-d])(?:[\s).:\-]|$)")


class StudyNotes(BaseModel):
    """Markdown revision notes drafted for a topic."""

    body: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _from_text(cls, data: object) -> object:
        if isinstance(data, str):
            return {"body": data.strip()}
        return data


class TopicList(BaseModel):
    """Topics detected in a source, in detected order."""

    topics: list[str]

    @model_validator(mode="before")
    @classmethod
    def _from_text(cls, data: object) -> object:
        if isinstance(data, str):
            return {"topics": re.split(r"[,\n]", data)}
        if isinstance(data, list):
            return {"topics": data}
        return data

    @field_validator("topics")
    @classmethod
    def _clean(cls, value: list[str]) -> list[str]:
        cleaned = [t.strip().strip("\"'").strip() for t in value]
        return [t for t in cleaned if t][:MAX_DETECTED_TOPICS]


class Question(BaseModel):
    """One quiz question as produced by the service."""

    id: int
    type: QuestionFormat
    question: str = Field(min_length=1)
    options: dict[str, str] | None = None
    correct_answer: str | None = None
    expected_answer_points: list[str] = Field(default_factory=list)
    evidence: str = ""
    source: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalise_choices(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["type"] = QuestionFormat.coerce(data.get("type"))
        options = data.get("options")
        if isinstance(options, dict):
            data["options"] = {str(k).strip().upper(): v for k, v in options.items()}
        answer = data.get("correct_answer")
        if data["type"] == QuestionFormat.OBJECTIVE.value and isinstance(answer, str):
            match = _LABEL_RE.match(answer)
            if match and options:
                data["correct_answer"] = match.group(1).upper()
        return data

    @model_validator(mode="after")
    def _check_shape(self) -> Question:
        if self.type is QuestionFormat.OBJECTIVE:
            if not self.options or tuple(sorted(self.options)) != CHOICE_LABELS:
                raise ValueError(
                    f"objective question {self.id} must have exactly the choices A, B, C, D"
                )
            if self.correct_answer not in CHOICE_LABELS:
                raise ValueError(
                    f"objective question {self.id} needs a correct_answer among A-D"
                )
        else:
            self.options = None
        return self

    @property
    def is_objective(self) -> bool:
        return self.type is QuestionFormat.OBJECTIVE


class Quiz(BaseModel):
    """A generated quiz; ``questions`` must be non-empty and ids unique."""

    quiz_title: str = ""
    quiz_type: str = ""
    difficulty: str = ""
    total_questions: int = 0
    questions: list[Question] = Field(min_length=1)
    instructions_to_user: str = ""
    ready_for_answers: bool = True

    @field_validator("questions")
    @classmethod
    def _unique_ids(cls, value: list[Question]) -> list[Question]:
        ids = [q.id for q in value]
        if len(ids) != len(set(ids)):
            raise ValueError("question ids must be unique within a quiz")
        return value

    @property
    def question_ids(self) -> set[int]:
        return {q.id for q in self.questions}


class QuestionReview(BaseModel):
    """Per-question feedback inside a cognitive audit."""

    id: int
    question: str = ""
    your_answer: str = ""
    correct_answer: str = ""
    explanation: str = ""
    evidence: str = ""
    source: str = ""
    is_correct: bool
    score_attained: float = 0.0


class EvaluationResult(BaseModel):
    """The cognitive audit returned by the grading stage."""

    total_questions: int = Field(ge=0)
    correct: int = Field(ge=0)
    incorrect: int = Field(ge=0)
    score: float = Field(ge=0)
    total_score: float = Field(ge=0)
    percentage: float = Field(ge=0, le=100)
    final_feedback: str = ""
    all_questions_review: list[QuestionReview] = Field(default_factory=list)


# ── History ────────────────────────────────────────────────────────────────


class HistoryEntry(BaseModel):
    """A completed, graded session stored in the history ledger."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: int
    title: str
    percentage: float
    results: EvaluationResult
    quiz: Quiz
