"""
Stage requests for a practice session.

Flow
────
1. draft_notes(topic)            → markdown revision module (synthesized sources only)
2. detect_topics(source)         → up to 5 sub-topics found in the material
3. generate_quiz(source, config) → grounded Quiz
4. evaluate(quiz, answers)       → EvaluationResult ("cognitive audit")

The source is sent for topic detection and quiz synthesis only; grading
sees the quiz and the answers, which keeps that request small.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Mapping

from examecho.inference import InferenceClient, InferenceRequest, source_blocks
from examecho.models import (
    MAX_DETECTED_TOPICS,
    Difficulty,
    DocumentSource,
    EvaluationResult,
    Quiz,
    SessionConfig,
    StudyNotes,
    SynthesizedSource,
    TopicList,
)

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

# ── Prompts ────────────────────────────────────────────────────────────────

NOTES_SYSTEM = "You are an expert academic tutor writing concise, accurate revision material."

NOTES_PROMPT = """Create a high-quality revision module for: "{topic}".

STRICT FORMATTING RULES:
1. STRUCTURE: Use clear Markdown headings. Organize into:
   - Executive Summary (in a blockquote)
   - Key Concepts
   - Short Notes (using bullet points)
   - Examples & Applications
   - Common Mistakes to Avoid
2. MATHEMATICS: Use LaTeX syntax. Use $inline math$ and $$block math$$.
   NEVER use LaTeX for plain numbers like dates (e.g., 1945) or simple item counts.
3. TECHNICAL: Wrap SQL queries, Python, or other code in triple backticks with language tags.
4. TABLES: Use Markdown tables to compare or list technical parameters.
5. HIGHLIGHTS: Use bold text for critical terms. End with a "Summary Checklist"."""

TOPICS_SYSTEM = "You index study material. Reply with plain text only."

TOPICS_PROMPT = (
    "Identify the top {limit} distinct academic sub-topics or chapters from this material. "
    "Return only a simple comma-separated list of titles."
)

QUIZ_SYSTEM = (
    "You write rigorous practice quizzes grounded strictly in the provided material. "
    "Return only valid JSON, no commentary, no markdown fences."
)

QUIZ_PROMPT = """Construct a {difficulty} difficulty {question_format} quiz for: "{topic}". Provide exactly {count} questions.

QUIZ REQUIREMENTS:
1. OBJECTIVE questions: exactly 4 short, distinct options keyed A, B, C, D. 'correct_answer' must be the letter only.
2. OPEN-ENDED questions: require analytical answers. No 'options' property; list the key points of a model answer in 'expected_answer_points'.
3. MATH/CODE: Use LaTeX for formulas. Use code blocks for snippets.
4. EVIDENCE: Every question must include an 'evidence' field (a short quote from the material supporting the answer) and a 'source' field naming where in the material it comes from.
5. IDS: Number questions 1..{count}.
6. TITLE: Provide a professional title for the quiz."""

GRADING_SYSTEM = (
    "You are a fair, precise examiner. "
    "Return only valid JSON matching the schema, no commentary, no markdown fences."
)

GRADING_PROMPT = """Perform a comprehensive "Cognitive Audit" on these student responses.

Quiz Questions (JSON):
{questions}

Student Answers (JSON, keyed by question id; missing ids were not answered):
{answers}

GRADING CRITERIA:
- Objective questions: direct match against the correct letter.
- Open-ended questions: semantic alignment with the model answer.
- Unanswered questions are incorrect and score 0.
- Provide a clear 'explanation' for every response, highlighting specific key points.
- Review every question, in quiz order.
- Wrap the evaluation in a final encouraging feedback summary."""

# ── Output schemas ─────────────────────────────────────────────────────────

_QUESTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "id": {"type": "integer"},
        "type": {"type": "string", "enum": ["objective", "open-ended"]},
        "question": {"type": "string"},
        "options": {
            "type": "object",
            "properties": {label: {"type": "string"} for label in ("A", "B", "C", "D")},
            "required": ["A", "B", "C", "D"],
            "additionalProperties": False,
        },
        "correct_answer": {"type": "string"},
        "expected_answer_points": {"type": "array", "items": {"type": "string"}},
        "evidence": {"type": "string"},
        "source": {"type": "string"},
    },
    "required": ["id", "type", "question", "evidence", "source"],
    "additionalProperties": False,
}

QUIZ_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "quiz_title": {"type": "string"},
        "quiz_type": {"type": "string"},
        "difficulty": {"type": "string"},
        "total_questions": {"type": "integer"},
        "questions": {"type": "array", "items": _QUESTION_SCHEMA},
        "instructions_to_user": {"type": "string"},
        "ready_for_answers": {"type": "boolean"},
    },
    "required": ["quiz_title", "questions"],
    "additionalProperties": False,
}

EVALUATION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "total_questions": {"type": "integer"},
        "correct": {"type": "integer"},
        "incorrect": {"type": "integer"},
        "score": {"type": "number"},
        "total_score": {"type": "number"},
        "percentage": {"type": "number"},
        "final_feedback": {"type": "string"},
        "all_questions_review": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "integer"},
                    "question": {"type": "string"},
                    "your_answer": {"type": "string"},
                    "correct_answer": {"type": "string"},
                    "explanation": {"type": "string"},
                    "evidence": {"type": "string"},
                    "source": {"type": "string"},
                    "is_correct": {"type": "boolean"},
                    "score_attained": {"type": "number"},
                },
                "required": ["id", "is_correct", "score_attained"],
                "additionalProperties": False,
            },
        },
    },
    "required": [
        "total_questions", "correct", "incorrect", "score",
        "total_score", "percentage", "final_feedback", "all_questions_review",
    ],
    "additionalProperties": False,
}


class Examiner:
    """Builds the request for each session stage and runs it.

    Model routing lives here: every stage uses the fast tier except
    expert-difficulty quizzes, which go to the higher-capability tier.
    """

    def __init__(self, settings: Settings, client: InferenceClient | None = None) -> None:
        self.settings = settings
        self.client = client or InferenceClient(settings)

    async def draft_notes(self, topic: str) -> str:
        """Draft a markdown revision module for *topic*.

        Args:
            topic: Free-text academic subject.

        Returns:
            The notes as markdown.

        Raises:
            ValueError: If topic is blank.
            InferenceError: On service failure or an empty reply.
        """
        topic = topic.strip()
        if not topic:
            raise ValueError("Topic must not be empty.")

        request = InferenceRequest(
            stage="notes",
            model=self.settings.fast_model,
            system=NOTES_SYSTEM,
            content=[{"type": "text", "text": NOTES_PROMPT.format(topic=topic)}],
            max_tokens=4096,
        )
        notes = await self.client.invoke(request, StudyNotes)
        return notes.body

    async def detect_topics(self, source: DocumentSource | SynthesizedSource) -> list[str]:
        """Return up to five sub-topics found in *source*, in detected order.

        Args:
            source: An uploaded document or drafted study notes.

        Returns:
            Topic labels, without the "Whole Content" entry.
        """
        request = InferenceRequest(
            stage="topics",
            model=self.settings.fast_model,
            system=TOPICS_SYSTEM,
            content=[
                *source_blocks(source),
                {"type": "text", "text": TOPICS_PROMPT.format(limit=MAX_DETECTED_TOPICS)},
            ],
            max_tokens=300,
        )
        detected = await self.client.invoke(request, TopicList)
        logger.info("Detected %d topics", len(detected.topics))
        return detected.topics

    async def generate_quiz(
        self,
        source: DocumentSource | SynthesizedSource,
        config: SessionConfig,
    ) -> Quiz:
        """Synthesize a quiz from *source* following *config*.

        Args:
            source: The material every question must be grounded in.
            config: Format, question count, difficulty and focus topic.

        Returns:
            The validated Quiz. Expert quizzes come from the pro model.

        Raises:
            InferenceError: On rate limiting, service failure or a malformed quiz.
        """
        model = (
            self.settings.pro_model
            if config.difficulty is Difficulty.EXPERT
            else self.settings.fast_model
        )
        prompt = QUIZ_PROMPT.format(
            difficulty=config.difficulty.value,
            question_format=config.question_format.value,
            topic=config.topic,
            count=config.count,
        )
        request = InferenceRequest(
            stage="quiz",
            model=model,
            system=QUIZ_SYSTEM,
            content=[*source_blocks(source), {"type": "text", "text": prompt}],
            max_tokens=1000 + 500 * config.count,
            output_schema=QUIZ_SCHEMA,
        )
        quiz = await self.client.invoke(request, Quiz)
        if len(quiz.questions) != config.count:
            logger.warning(
                "Requested %d questions, service returned %d",
                config.count, len(quiz.questions),
            )
        return quiz

    async def evaluate(self, quiz: Quiz, answers: Mapping[int, str]) -> EvaluationResult:
        """Grade *answers* against *quiz*. The source material is not resent.

        Args:
            quiz: The quiz being graded.
            answers: Recorded answers keyed by question id.

        Returns:
            The per-question audit and totals.
        """
        questions = json.dumps(
            [q.model_dump(mode="json", exclude_none=True) for q in quiz.questions]
        )
        prompt = GRADING_PROMPT.format(
            questions=questions,
            answers=json.dumps({str(k): v for k, v in answers.items()}),
        )
        request = InferenceRequest(
            stage="grading",
            model=self.settings.fast_model,
            system=GRADING_SYSTEM,
            content=[{"type": "text", "text": prompt}],
            max_tokens=1000 + 400 * len(quiz.questions),
            output_schema=EVALUATION_SCHEMA,
        )
        return await self.client.invoke(request, EvaluationResult)
