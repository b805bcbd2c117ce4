"""Per-module attempt lifecycle: start, progress, answers, submission, abandonment."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from ielts_core import aggregator, analytics
from ielts_core.errors import (
    AlreadySubmitted,
    EvaluationFailure,
    InvalidState,
    NotFound,
    SessionError,
    SessionExpired,
    TestNotFound,
)
from ielts_core.feedback import MIN_WORDS, FeedbackService, WritingGrader
from ielts_core.models import (
    OPEN_STATUSES,
    ModuleAttempt,
    Module,
    PerformanceAnalytics,
    SessionStatus,
    SubmittedAnswer,
    TestResult,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATIONS = {
    Module.LISTENING: 1800,
    Module.READING: 3600,
    Module.WRITING: 3600,
}


@dataclass(frozen=True, slots=True)
class StartedTest:
    attempt_id: str
    test_content: dict
    time_limit_seconds: int
    deadline: datetime

    def to_dict(self):
        return {
            "attempt_id": self.attempt_id,
            "test_content": self.test_content,
            "time_limit_seconds": self.time_limit_seconds,
            "deadline": self.deadline,
        }


@dataclass(frozen=True, slots=True)
class SubmissionOutcome:
    result: TestResult
    analytics: PerformanceAnalytics

    def to_dict(self):
        return {"result": self.result.to_dict(), "analytics": self.analytics.to_dict()}


class ModuleSessionManager:
    """Owns the NOT_STARTED -> IN_PROGRESS -> COMPLETED | EXPIRED state machine."""

    module: Module
    section_label = "section"
    progress_fields: frozenset = frozenset()

    def __init__(self, store, registry, quota, feedback=None, time_limit_seconds=None,
                 cooldown=analytics.DEFAULT_COOLDOWN, clock=utcnow):
        self.store = store
        self.registry = registry
        self.quota = quota
        self.feedback = feedback or FeedbackService()
        self.time_limit_seconds = time_limit_seconds
        self.cooldown = cooldown
        self.clock = clock

    def initial_progress(self):
        return {}

    # Lookups and guards

    def _load_attempt(self, attempt_id, user_id=None) -> ModuleAttempt:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None or attempt.module is not self.module:
            raise NotFound(f"No {self.module.label} test attempt {attempt_id}", attempt_id=attempt_id)
        if user_id is not None and attempt.user_id != user_id:
            raise NotFound(f"No {self.module.label} test attempt {attempt_id}", attempt_id=attempt_id)
        return attempt

    def _load_content(self, test_id):
        content = self.store.get_test(test_id)
        if content is None or not content.is_active or content.module is not self.module:
            raise TestNotFound(f"Invalid {self.module.label} test ID", test_id=test_id)
        return content

    def _require_active(self, attempt):
        if attempt.status is SessionStatus.IN_PROGRESS:
            if self.clock() >= attempt.expires_at:
                raise SessionExpired(
                    "Test session has expired", attempt_id=attempt.id, expired_at=attempt.expires_at
                )
            return
        raise InvalidState(
            f"No active {self.module.label} test session found",
            attempt_id=attempt.id,
            status=attempt.status.value,
        )

    def _require_submittable(self, attempt):
        if attempt.status in (SessionStatus.COMPLETED, SessionStatus.SUBMITTED):
            raise AlreadySubmitted("Answers have already been submitted", attempt_id=attempt.id)
        if attempt.status is SessionStatus.EXPIRED:
            raise SessionExpired(
                "Test session has expired", attempt_id=attempt.id, expired_at=attempt.expires_at
            )
        self._require_active(attempt)

    # Operations

    def start_test(self, user_id, test_id) -> StartedTest:
        self.quota.ensure_can_start(user_id, self.module)
        content = self._load_content(test_id)
        time_limit = (
            self.time_limit_seconds
            or content.time_limit_seconds
            or DEFAULT_DURATIONS[self.module]
        )

        attempt_id = str(uuid.uuid4())
        session = self.registry.acquire(user_id, self.module, test_id, attempt_id, time_limit)
        try:
            attempt = ModuleAttempt(
                id=attempt_id,
                user_id=user_id,
                module=self.module,
                test_id=test_id,
                status=SessionStatus.NOT_STARTED,
                started_at=session.started_at,
                expires_at=session.expires_at,
                progress=self.initial_progress(),
            )
            self.store.create_attempt(attempt)
            self.store.transition_attempt(
                attempt_id, {SessionStatus.NOT_STARTED}, SessionStatus.IN_PROGRESS
            )
            self.registry.mark_in_progress(user_id, attempt_id)
        except Exception:
            logger.exception("Failed to create %s attempt for user %s", self.module.value, user_id)
            self.registry.abandon(user_id, attempt_id)
            raise

        logger.info("User %s started %s test %s (attempt %s)", user_id, self.module.value, test_id, attempt_id)
        return StartedTest(
            attempt_id=attempt_id,
            test_content=content.public_view(),
            time_limit_seconds=time_limit,
            deadline=session.expires_at,
        )

    def update_progress(self, attempt_id, fields, user_id=None):
        attempt = self._load_attempt(attempt_id, user_id)
        self._require_active(attempt)

        progress = {k: v for k, v in fields.items() if k in self.progress_fields}
        time_spent = fields.get("time_spent")
        updated = self.store.update_attempt_progress(
            attempt_id, progress, int(time_spent) if time_spent is not None else None
        )
        if updated is None:
            raise InvalidState(f"No active {self.module.label} test session found", attempt_id=attempt_id)
        self.registry.mark_in_progress(attempt.user_id, attempt_id)
        return updated.to_summary()

    def save_answer(self, attempt_id, question_id, user_answer, user_id=None, time_spent=1):
        attempt = self._load_attempt(attempt_id, user_id)
        self._require_active(attempt)

        content = self._load_content(attempt.test_id)
        question = content.find_question(question_id)
        if question is None:
            raise NotFound("Question not found", question_id=question_id)

        saved = self.store.save_answer(
            attempt_id, question_id, question.question_number, user_answer or "", time_spent
        )
        if saved is None:
            raise InvalidState(f"No active {self.module.label} test session found", attempt_id=attempt_id)
        return saved

    def submit(self, attempt_id, answers=(), user_id=None) -> SubmissionOutcome:
        attempt = self._load_attempt(attempt_id, user_id)
        self._require_submittable(attempt)
        content = self._load_content(attempt.test_id)

        submitted = [a if isinstance(a, SubmittedAnswer) else SubmittedAnswer(**a) for a in answers]
        for answer in submitted:
            if content.find_question(answer.question_id) is None:
                raise NotFound("Question not found", question_id=answer.question_id)
        for answer in submitted:
            question = content.find_question(answer.question_id)
            saved = self.store.save_answer(
                attempt_id, answer.question_id, question.question_number,
                answer.user_answer or "", answer.time_spent,
            )
            if saved is None:
                self._require_submittable(self._load_attempt(attempt_id))
                raise AlreadySubmitted("Answers have already been submitted", attempt_id=attempt_id)

        now = self.clock()
        try:
            merged = self.store.get_answers(attempt_id)
            report = self._score(attempt, content, merged)
            result = self._build_result(attempt, content, report, now)
        except SessionError:
            raise
        except Exception as e:
            logger.exception("Evaluation failed for %s attempt %s", self.module.value, attempt_id)
            raise EvaluationFailure(
                f"{self.module.label.capitalize()} answer evaluation failed; please submit again",
                attempt_id=attempt_id,
            ) from e

        updated = self.store.commit_result(
            result,
            report.evaluations,
            {
                "completed_at": now,
                "submitted_at": now,
                "time_spent": result.time_spent,
                "score": result.score,
                "total_score": result.total_score,
                "band_score": result.band_score,
                "percentage": result.percentage,
            },
            lambda previous: analytics.update(previous, result, now, self.cooldown),
        )
        if updated is None:
            # Another submit or an abandon reached a terminal state first
            self._require_submittable(self._load_attempt(attempt_id))
            raise AlreadySubmitted("Answers have already been submitted", attempt_id=attempt_id)

        self.registry.complete(attempt.user_id, attempt_id)

        logger.info(
            "User %s submitted %s attempt %s: band %.1f",
            attempt.user_id, self.module.value, attempt_id, result.band_score,
        )
        return SubmissionOutcome(result=result, analytics=updated)

    def abandon(self, attempt_id, user_id=None):
        attempt = self._load_attempt(attempt_id, user_id)
        changed = self.store.transition_attempt(
            attempt_id, OPEN_STATUSES, SessionStatus.EXPIRED, completed_at=self.clock()
        )
        self.registry.abandon(attempt.user_id, attempt_id)
        if changed:
            logger.info("User %s abandoned %s attempt %s", attempt.user_id, self.module.value, attempt_id)
        return changed

    def get_stats(self, attempt_id, user_id=None):
        attempt = self._load_attempt(attempt_id, user_id)
        content = self.store.get_test(attempt.test_id)
        answers = self.store.get_answers(attempt_id)
        total = content.total_questions if content else 0
        answered = sum(1 for a in answers.values() if aggregator.is_answered(a))

        time_remaining = 0
        if attempt.status in OPEN_STATUSES:
            time_remaining = max(0, int((attempt.expires_at - self.clock()).total_seconds()))

        stats = {
            "attempt_id": attempt.id,
            "status": attempt.status.value,
            "answered": answered,
            "total": total,
            "completion_rate": aggregator.completion_rate(answered, total),
            "time_remaining": time_remaining,
            "time_spent": attempt.time_spent,
        }
        stats.update(self._module_stats(attempt, content))
        return stats

    def active_attempt(self, user_id):
        return self.store.find_open_attempt(user_id, self.module, self.clock())

    def list_tests(self):
        return self.store.list_tests(self.module, active_only=True)

    def get_result(self, attempt_id, user_id=None):
        self._load_attempt(attempt_id, user_id)
        result = self.store.get_result(attempt_id)
        if result is None:
            raise NotFound("No result for this attempt yet", attempt_id=attempt_id)
        return result

    # Scoring hooks

    def _module_stats(self, attempt, content):
        return {}

    def _time_spent(self, attempt, now):
        limit = int((attempt.expires_at - attempt.started_at).total_seconds())
        spent = attempt.time_spent or int((now - attempt.started_at).total_seconds())
        return max(0, min(spent, limit))

    def _score(self, attempt, content, answers) -> aggregator.ScoreReport:
        return aggregator.aggregate(content, answers, section_label=self.section_label)

    def _feedback_data(self, attempt, content, report, time_spent):
        return {
            "band_score": report.band_score,
            "correct_answers": report.correct_answers,
            "wrong_answers": report.wrong_answers,
            "skipped_answers": report.skipped_answers,
            "total_questions": report.total_questions,
            "section_scores": report.section_scores,
            "question_type_scores": report.question_type_scores,
            "completion_rate": report.completion_rate,
            "time_spent": time_spent,
            "total_duration": int((attempt.expires_at - attempt.started_at).total_seconds()),
        }

    def _build_result(self, attempt, content, report, now) -> TestResult:
        time_spent = self._time_spent(attempt, now)
        ai_feedback = self.feedback.generate(
            self.module,
            self._feedback_data(attempt, content, report, time_spent),
            report.recommendations,
        )
        return TestResult(
            id=str(uuid.uuid4()),
            attempt_id=attempt.id,
            user_id=attempt.user_id,
            test_id=attempt.test_id,
            module=self.module,
            score=report.score,
            total_score=report.total_score,
            band_score=report.band_score,
            percentage=report.percentage,
            correct_answers=report.correct_answers,
            wrong_answers=report.wrong_answers,
            skipped_answers=report.skipped_answers,
            section_scores=report.section_scores,
            question_type_scores=report.question_type_scores,
            strengths=tuple(report.strengths),
            weaknesses=tuple(report.weaknesses),
            time_spent=time_spent,
            completion_rate=report.completion_rate,
            created_at=now,
            audio_time_spent=int(attempt.progress.get("audio_time_spent", 0) or 0),
            audio_utilization=report.audio_utilization,
            ai_feedback=ai_feedback,
            recommendations=tuple(report.recommendations),
            next_level_suggestion=report.next_level_suggestion,
            task_bands=report.task_bands,
        )


class ListeningSessionManager(ModuleSessionManager):
    module = Module.LISTENING
    progress_fields = frozenset({
        "current_section",
        "audio_started_at",
        "audio_time_spent",
        "audio_completed",
        "warning_shown",
    })

    def initial_progress(self):
        return {
            "current_section": 1,
            "audio_time_spent": 0,
            "audio_completed": False,
            "warning_shown": False,
        }

    def _score(self, attempt, content, answers):
        return aggregator.aggregate(
            content,
            answers,
            section_label=self.section_label,
            audio_time_spent=attempt.progress.get("audio_time_spent", 0) or 0,
        )

    def _module_stats(self, attempt, content):
        audio_time_spent = attempt.progress.get("audio_time_spent", 0) or 0
        return {
            "current_section": attempt.progress.get("current_section"),
            "audio_time_spent": audio_time_spent,
            "audio_utilization": aggregator.audio_utilization(
                audio_time_spent, content.audio_duration if content else 0
            ),
            "audio_completed": attempt.progress.get("audio_completed", False),
            "warning_shown": attempt.progress.get("warning_shown", False),
        }

    def _feedback_data(self, attempt, content, report, time_spent):
        data = super()._feedback_data(attempt, content, report, time_spent)
        data["audio_utilization"] = report.audio_utilization
        data["audio_time_spent"] = attempt.progress.get("audio_time_spent", 0)
        return data


class ReadingSessionManager(ModuleSessionManager):
    module = Module.READING
    section_label = "passage"
    progress_fields = frozenset({"current_passage"})

    def initial_progress(self):
        return {"current_passage": 1}

    def _module_stats(self, attempt, content):
        return {"current_passage": attempt.progress.get("current_passage")}


class WritingSessionManager(ModuleSessionManager):
    module = Module.WRITING
    section_label = "task"
    progress_fields = frozenset({"current_task", "task1_word_count", "task2_word_count"})

    def __init__(self, store, registry, quota, grader=None, **kwargs):
        super().__init__(store, registry, quota, **kwargs)
        self.grader = grader or WritingGrader()

    def initial_progress(self):
        return {"current_task": 1, "task1_word_count": 0, "task2_word_count": 0}

    def _module_stats(self, attempt, content):
        return {"current_task": attempt.progress.get("current_task")}

    def _score(self, attempt, content, answers):
        task_bands = {}
        for number, question in enumerate(content.questions, start=1):
            answer = answers.get(question.id)
            text = answer.user_answer if answer else ""
            task_bands[question.id] = self.grader.grade(number, question.prompt, text)
        return aggregator.aggregate_writing(content, answers, task_bands)

    def _feedback_data(self, attempt, content, report, time_spent):
        data = super()._feedback_data(attempt, content, report, time_spent)
        answers = self.store.get_answers(attempt.id)
        for number, question in enumerate(content.questions, start=1):
            answer = answers.get(question.id)
            data[f"task{number}_word_count"] = len(answer.user_answer.split()) if answer else 0
            data[f"task{number}_min_words"] = MIN_WORDS.get(number)
        data["task_bands"] = report.task_bands
        return data
