"""Domain models for test sessions, attempts, answers and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how MySQL DATETIME columns store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Module(str, Enum):
    LISTENING = "LISTENING"
    READING = "READING"
    WRITING = "WRITING"

    @property
    def label(self) -> str:
        return self.value.lower()


class SessionStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SUBMITTED = "SUBMITTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


OPEN_STATUSES = frozenset({SessionStatus.NOT_STARTED, SessionStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.SUBMITTED, SessionStatus.EXPIRED}
)


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


@dataclass(slots=True)
class Question:
    """Immutable reference data for one question of a test."""

    id: str
    section_id: str
    question_number: int
    question_type: str
    correct_answer: str
    acceptable_answers: tuple[str, ...] = ()
    case_sensitive: bool = False
    points: int = 1
    prompt: str = ""
    options: dict[str, str] | None = None

    def public_view(self) -> dict[str, Any]:
        # Never leak the answer key to the test taker
        return {
            "id": self.id,
            "question_number": self.question_number,
            "question_type": self.question_type,
            "prompt": self.prompt,
            "options": self.options,
            "points": self.points,
        }


@dataclass(slots=True)
class Section:
    id: str
    number: int
    title: str
    questions: list[Question] = field(default_factory=list)
    instructions: str = ""


@dataclass(slots=True)
class TestContent:
    """A published test for one module with its sections and questions."""

    __test__ = False

    id: str
    module: Module
    title: str
    time_limit_seconds: int
    sections: list[Section] = field(default_factory=list)
    is_active: bool = True
    description: str = ""
    audio_url: str | None = None
    audio_duration: int = 0

    @property
    def questions(self) -> list[Question]:
        return [q for section in self.sections for q in section.questions]

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def find_question(self, question_id: str) -> Question | None:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def section_of(self, question_id: str) -> Section | None:
        for section in self.sections:
            if any(q.id == question_id for q in section.questions):
                return section
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module": self.module.value,
            "title": self.title,
            "description": self.description,
            "time_limit_seconds": self.time_limit_seconds,
            "audio_duration": self.audio_duration,
            "total_questions": self.total_questions,
            "sections": len(self.sections),
        }

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module": self.module.value,
            "title": self.title,
            "description": self.description,
            "audio_url": self.audio_url,
            "audio_duration": self.audio_duration,
            "total_questions": self.total_questions,
            "sections": [
                {
                    "id": section.id,
                    "number": section.number,
                    "title": section.title,
                    "instructions": section.instructions,
                    "questions": [q.public_view() for q in section.questions],
                }
                for section in self.sections
            ],
        }


@dataclass(slots=True)
class GlobalSession:
    """Cross-module exclusivity claim held while an attempt is in flight."""

    id: str
    user_id: str
    module: Module
    module_test_id: str
    module_attempt_id: str
    status: SessionStatus
    started_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    time_limit_seconds: int
    is_active: bool = True

    def blocks(self, now: datetime) -> bool:
        return self.is_active and self.status in OPEN_STATUSES and self.expires_at > now


@dataclass(slots=True)
class ModuleAttempt:
    id: str
    user_id: str
    module: Module
    test_id: str
    status: SessionStatus
    started_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None
    submitted_at: datetime | None = None
    time_spent: int = 0
    score: int | None = None
    total_score: int | None = None
    band_score: float | None = None
    percentage: float | None = None
    progress: dict[str, Any] = field(default_factory=dict)

    def to_summary(self) -> dict[str, Any]:
        return {
            "attempt_id": self.id,
            "module": self.module.value,
            "test_id": self.test_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "expires_at": self.expires_at,
            "completed_at": self.completed_at,
            "time_spent": self.time_spent,
            "band_score": self.band_score,
            "progress": dict(self.progress),
        }


@dataclass(slots=True)
class Answer:
    attempt_id: str
    question_id: str
    question_number: int
    user_answer: str
    time_spent: int = 0
    is_correct: bool | None = None
    points_earned: int = 0


@dataclass(slots=True)
class SubmittedAnswer:
    """Answer payload supplied by the caller at submission time."""

    question_id: str
    user_answer: str
    time_spent: int = 0


@dataclass(frozen=True, slots=True)
class TestResult:
    """Immutable scoring snapshot, created once per attempt."""

    __test__ = False

    id: str
    attempt_id: str
    user_id: str
    test_id: str
    module: Module
    score: int
    total_score: int
    band_score: float
    percentage: float
    correct_answers: int
    wrong_answers: int
    skipped_answers: int
    section_scores: dict[str, dict[str, float]]
    question_type_scores: dict[str, dict[str, float]]
    strengths: tuple[str, ...]
    weaknesses: tuple[str, ...]
    time_spent: int
    completion_rate: float
    created_at: datetime
    audio_time_spent: int = 0
    audio_utilization: float = 0.0
    ai_feedback: dict[str, Any] = field(default_factory=dict)
    recommendations: tuple[str, ...] = ()
    next_level_suggestion: str = ""
    task_bands: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "test_id": self.test_id,
            "module": self.module.value,
            "score": self.score,
            "total_score": self.total_score,
            "band_score": self.band_score,
            "percentage": self.percentage,
            "correct_answers": self.correct_answers,
            "wrong_answers": self.wrong_answers,
            "skipped_answers": self.skipped_answers,
            "section_scores": self.section_scores,
            "question_type_scores": self.question_type_scores,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "time_spent": self.time_spent,
            "audio_time_spent": self.audio_time_spent,
            "audio_utilization": self.audio_utilization,
            "completion_rate": self.completion_rate,
            "ai_feedback": self.ai_feedback,
            "recommendations": list(self.recommendations),
            "next_level_suggestion": self.next_level_suggestion,
            "task_bands": self.task_bands,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class PerformanceAnalytics:
    user_id: str
    module: Module
    total_tests: int = 0
    average_band_score: float = 0.0
    best_band_score: float = 0.0
    latest_band_score: float = 0.0
    average_time_spent: float = 0.0
    average_audio_time: float = 0.0
    audio_utilization_rate: float = 0.0
    completion_rate: float = 0.0
    last_test_date: datetime | None = None
    next_allowed_attempt_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "module": self.module.value,
            "total_tests": self.total_tests,
            "average_band_score": self.average_band_score,
            "best_band_score": self.best_band_score,
            "latest_band_score": self.latest_band_score,
            "average_time_spent": self.average_time_spent,
            "average_audio_time": self.average_audio_time,
            "audio_utilization_rate": self.audio_utilization_rate,
            "completion_rate": self.completion_rate,
            "last_test_date": self.last_test_date,
            "next_allowed_attempt_at": self.next_allowed_attempt_at,
        }
