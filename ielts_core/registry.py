"""Cross-module exclusivity lock: one in-flight attempt per learner."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import timedelta

from ielts_core.errors import SessionConflict
from ielts_core.models import GlobalSession, Module, SessionStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActiveSessionView:
    """Read-time projection of a global session with its computed deadline state."""

    session: GlobalSession
    time_remaining: int
    is_expired: bool

    @property
    def state(self) -> str:
        if not self.session.is_active or self.session.status.is_terminal:
            return "Terminal"
        return "Expired" if self.is_expired else "Active"

    def to_dict(self):
        session = self.session
        return {
            "id": session.id,
            "module": session.module.value,
            "module_test_id": session.module_test_id,
            "module_attempt_id": session.module_attempt_id,
            "status": session.status.value,
            "started_at": session.started_at,
            "last_activity_at": session.last_activity_at,
            "expires_at": session.expires_at,
            "time_limit_seconds": session.time_limit_seconds,
            "time_remaining": self.time_remaining,
            "is_expired": self.is_expired,
            "state": self.state,
        }


class GlobalSessionRegistry:
    def __init__(self, store, clock=utcnow):
        self.store = store
        self.clock = clock

    def acquire(self, user_id, module: Module, module_test_id, module_attempt_id,
                time_limit_seconds) -> GlobalSession:
        """Claim the user's single active slot or raise SessionConflict.

        The existence check and the insert run as one unit inside the store.
        """
        now = self.clock()
        session = GlobalSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            module=module,
            module_test_id=module_test_id,
            module_attempt_id=module_attempt_id,
            status=SessionStatus.NOT_STARTED,
            started_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(seconds=time_limit_seconds),
            time_limit_seconds=time_limit_seconds,
            is_active=True,
        )
        blocking = self.store.insert_global_session(session, now)
        if blocking is not None:
            logger.warning(
                "Session conflict for user %s: %s attempt %s still active",
                user_id, blocking.module.value, blocking.module_attempt_id,
            )
            raise SessionConflict(
                blocking.module.value, blocking.module_attempt_id, blocking.module_test_id
            )
        logger.info("Acquired %s session %s for user %s", module.value, session.id, user_id)
        return session

    def mark_in_progress(self, user_id, module_attempt_id):
        return self.store.update_global_session(
            user_id, module_attempt_id, SessionStatus.IN_PROGRESS, True, self.clock()
        )

    def complete(self, user_id, module_attempt_id):
        return self.store.update_global_session(
            user_id, module_attempt_id, SessionStatus.COMPLETED, False, self.clock()
        )

    def abandon(self, user_id, module_attempt_id):
        return self.store.update_global_session(
            user_id, module_attempt_id, SessionStatus.EXPIRED, False, self.clock()
        )

    def view(self, session: GlobalSession) -> ActiveSessionView:
        now = self.clock()
        remaining = max(0, math.floor((session.expires_at - now).total_seconds()))
        return ActiveSessionView(
            session=session, time_remaining=remaining, is_expired=session.expires_at <= now
        )

    def active_session_for(self, user_id, include_expired=False) -> ActiveSessionView | None:
        session = self.store.find_open_global_session(user_id)
        if session is None:
            return None
        view = self.view(session)
        if view.is_expired and not include_expired:
            return None
        return view

    def sweep_expired(self):
        count = self.store.expire_global_sessions(self.clock())
        if count:
            logger.info("Expired %d stale global sessions", count)
        return count

    def history(self, user_id, page=1, limit=10):
        page = max(1, int(page))
        limit = max(1, int(limit))
        sessions, total = self.store.list_global_sessions(user_id, (page - 1) * limit, limit)
        total_pages = math.ceil(total / limit)
        return {
            "sessions": sessions,
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": total_pages,
                "has_next_page": page < total_pages,
                "has_previous_page": page > 1,
            },
        }

    def force_end_all(self, user_id, reason="Administrative action"):
        count = self.store.close_all_global_sessions(user_id, self.clock())
        logger.warning("Force-ended %d sessions for user %s: %s", count, user_id, reason)
        return count
