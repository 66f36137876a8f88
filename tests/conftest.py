"""Shared fixtures and payload builders for the ExamEcho test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import Settings


def make_question(qid: int, question_format: str = "objective") -> dict:
    question = {
        "id": qid,
        "type": question_format,
        "question": f"Question {qid} about binary search trees?",
        "evidence": "A BST keeps smaller keys in the left subtree.",
        "source": "Section 1",
    }
    if question_format == "objective":
        question["options"] = {"A": "O(1)", "B": "O(log n)", "C": "O(n)", "D": "O(n log n)"}
        question["correct_answer"] = "B"
    else:
        question["expected_answer_points"] = ["ordering invariant", "balanced height"]
    return question


def make_quiz_payload(count: int = 5, question_format: str = "objective") -> dict:
    return {
        "quiz_title": "Binary Search Trees Drill",
        "quiz_type": question_format,
        "difficulty": "advanced",
        "total_questions": count,
        "questions": [make_question(i, question_format) for i in range(1, count + 1)],
        "instructions_to_user": "Answer every question.",
        "ready_for_answers": True,
    }


def make_evaluation_payload(count: int = 5, correct: int = 3) -> dict:
    return {
        "total_questions": count,
        "correct": correct,
        "incorrect": count - correct,
        "score": correct,
        "total_score": count,
        "percentage": round(100 * correct / count, 1),
        "final_feedback": "Solid grasp of the ordering invariant.",
        "all_questions_review": [
            {
                "id": i,
                "question": f"Question {i} about binary search trees?",
                "your_answer": "B" if i <= correct else "A",
                "correct_answer": "B",
                "explanation": "Lookups follow one root-to-leaf path.",
                "evidence": "A BST keeps smaller keys in the left subtree.",
                "source": "Section 1",
                "is_correct": i <= correct,
                "score_attained": 1 if i <= correct else 0,
            }
            for i in range(1, count + 1)
        ],
    }


def text_response(text: str) -> MagicMock:
    """Return a fake Messages API response whose only content block is *text*."""
    block = MagicMock()
    block.type = "text"
    block.text = text
    response = MagicMock()
    response.content = [block]
    return response


def make_anthropic_client(*side_effect) -> MagicMock:
    """Return a fake AsyncAnthropic whose ``messages.create`` yields *side_effect* in turn."""
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(side_effect))
    return client


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        anthropic_api_key="test-key",
        fast_model="fast-model",
        pro_model="pro-model",
        retry_attempts=3,
        retry_base_delay=1.0,
        history_path=tmp_path / "history.db",
        history_limit=10,
    )


@pytest.fixture
def delays() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(delays):
    """An ``asyncio.sleep`` stand-in that records requested delays."""

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    return _sleep
