"""Process-local storage backend guarded by a single re-entrant lock."""

from __future__ import annotations

import copy
import threading
from dataclasses import replace

from ielts_core.models import (
    OPEN_STATUSES,
    Answer,
    SessionStatus,
    SubscriptionTier,
)


class MemoryStore:
    """Same surface as MySQLStore; every method is atomic under ``_lock``."""

    def __init__(self):
        self._lock = threading.RLock()
        self._users = {}
        self._tests = {}
        self._global_sessions = []
        self._attempts = {}
        self._answers = {}
        self._results = {}
        self._analytics = {}

    # Users
    def upsert_user(self, user_id, tier=SubscriptionTier.FREE):
        with self._lock:
            self._users[user_id] = SubscriptionTier(tier)

    def get_subscription_tier(self, user_id):
        with self._lock:
            return self._users.get(user_id)

    # Test content
    def add_test(self, content):
        with self._lock:
            self._tests[content.id] = copy.deepcopy(content)

    def get_test(self, test_id):
        with self._lock:
            content = self._tests.get(test_id)
            return copy.deepcopy(content) if content else None

    def list_tests(self, module, active_only=True):
        with self._lock:
            return [
                copy.deepcopy(content) for content in self._tests.values()
                if content.module == module and (content.is_active or not active_only)
            ]

    # Global sessions
    def insert_global_session(self, session, now):
        with self._lock:
            for existing in self._global_sessions:
                if existing.user_id != session.user_id or not existing.is_active:
                    continue
                if existing.blocks(now):
                    return copy.deepcopy(existing)
                # Stale claim left behind by a deadline nobody swept
                existing.status = SessionStatus.EXPIRED
                existing.is_active = False
                existing.last_activity_at = now
                attempt = self._attempts.get(existing.module_attempt_id)
                if attempt is not None and attempt.status in OPEN_STATUSES:
                    attempt.status = SessionStatus.EXPIRED
                    attempt.completed_at = now
            self._global_sessions.append(copy.deepcopy(session))
            return None

    def find_open_global_session(self, user_id):
        with self._lock:
            for session in self._global_sessions:
                if session.user_id == user_id and session.is_active and session.status in OPEN_STATUSES:
                    return copy.deepcopy(session)
            return None

    def update_global_session(self, user_id, module_attempt_id, status, is_active, now):
        with self._lock:
            count = 0
            for session in self._global_sessions:
                if (session.user_id == user_id and session.module_attempt_id == module_attempt_id
                        and session.is_active):
                    session.status = status
                    session.is_active = is_active
                    session.last_activity_at = now
                    count += 1
            return count

    def expire_global_sessions(self, now):
        with self._lock:
            count = 0
            for session in self._global_sessions:
                if session.is_active and session.expires_at < now:
                    session.status = SessionStatus.EXPIRED
                    session.is_active = False
                    count += 1
            return count

    def close_all_global_sessions(self, user_id, now):
        with self._lock:
            count = 0
            for session in self._global_sessions:
                if session.user_id == user_id and session.is_active:
                    session.status = SessionStatus.EXPIRED
                    session.is_active = False
                    session.last_activity_at = now
                    count += 1
            return count

    def list_global_sessions(self, user_id, offset, limit):
        with self._lock:
            sessions = [s for s in self._global_sessions if s.user_id == user_id]
            sessions.sort(key=lambda s: s.started_at, reverse=True)
            return copy.deepcopy(sessions[offset:offset + limit]), len(sessions)

    # Attempts
    def create_attempt(self, attempt):
        with self._lock:
            self._attempts[attempt.id] = copy.deepcopy(attempt)
            self._answers[attempt.id] = {}

    def get_attempt(self, attempt_id):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            return copy.deepcopy(attempt) if attempt else None

    def find_open_attempt(self, user_id, module, now):
        with self._lock:
            candidates = [
                a for a in self._attempts.values()
                if a.user_id == user_id and a.module == module
                and a.status in OPEN_STATUSES and a.expires_at > now
            ]
            if not candidates:
                return None
            return copy.deepcopy(max(candidates, key=lambda a: a.started_at))

    def count_attempts(self, user_id, module, statuses):
        with self._lock:
            return sum(
                1 for a in self._attempts.values()
                if a.user_id == user_id and a.module == module and a.status in statuses
            )

    def transition_attempt(self, attempt_id, from_statuses, to_status, **fields):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.status not in from_statuses:
                return False
            attempt.status = to_status
            for name, value in fields.items():
                setattr(attempt, name, value)
            return True

    def update_attempt_progress(self, attempt_id, progress, time_spent=None):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.status is not SessionStatus.IN_PROGRESS:
                return None
            attempt.progress.update(progress)
            if time_spent is not None:
                attempt.time_spent = time_spent
            return copy.deepcopy(attempt)

    # Answers
    def save_answer(self, attempt_id, question_id, question_number, user_answer, time_spent):
        """Upsert an answer; None when the attempt is no longer in progress."""
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.status is not SessionStatus.IN_PROGRESS:
                return None
            answers = self._answers.setdefault(attempt_id, {})
            existing = answers.get(question_id)
            if existing is None:
                existing = Answer(
                    attempt_id=attempt_id,
                    question_id=question_id,
                    question_number=question_number,
                    user_answer=user_answer,
                    time_spent=time_spent,
                )
                answers[question_id] = existing
            else:
                existing.user_answer = user_answer
                existing.time_spent += time_spent
            return copy.deepcopy(existing)

    def get_answers(self, attempt_id):
        with self._lock:
            return copy.deepcopy(self._answers.get(attempt_id, {}))

    # Results
    def commit_result(self, result, evaluations, attempt_fields, analytics_update):
        """Complete the attempt, finalise answers, store the result and update analytics.

        Returns the new analytics, or None when the attempt already left
        IN_PROGRESS. Nothing is written if ``analytics_update`` raises.
        """
        with self._lock:
            attempt = self._attempts.get(result.attempt_id)
            if attempt is None or attempt.status is not SessionStatus.IN_PROGRESS:
                return None
            if result.attempt_id in self._results:
                return None
            key = (result.user_id, result.module)
            analytics = analytics_update(copy.deepcopy(self._analytics.get(key)))

            answers = self._answers.setdefault(result.attempt_id, {})
            for question_id, evaluation in evaluations.items():
                if question_id in answers:
                    answers[question_id] = replace(
                        answers[question_id],
                        is_correct=evaluation.is_correct,
                        points_earned=evaluation.points_earned,
                    )
            self._results[result.attempt_id] = result
            attempt.status = SessionStatus.COMPLETED
            for name, value in attempt_fields.items():
                setattr(attempt, name, value)
            self._analytics[key] = copy.deepcopy(analytics)
            return analytics

    def get_result(self, attempt_id):
        with self._lock:
            return self._results.get(attempt_id)

    # Analytics
    def get_analytics(self, user_id, module):
        with self._lock:
            analytics = self._analytics.get((user_id, module))
            return copy.deepcopy(analytics) if analytics else None

    def apply_analytics(self, user_id, module, update):
        """Run ``update(previous)`` and store its return value, serialised per store."""
        with self._lock:
            previous = copy.deepcopy(self._analytics.get((user_id, module)))
            analytics = update(previous)
            self._analytics[(user_id, module)] = copy.deepcopy(analytics)
            return analytics
