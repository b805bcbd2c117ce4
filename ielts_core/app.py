from contextlib import asynccontextmanager
from enum import Enum
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from ielts_core.cleanup import SweepScheduler
from ielts_core.config import load_settings
from ielts_core.errors import SessionError
from ielts_core.logging_config import configure_logging
from ielts_core.models import Module, SubmittedAnswer
from ielts_core.services import Services, build_services

logger = logging.getLogger(__name__)


class ModuleName(str, Enum):
    listening = "listening"
    reading = "reading"
    writing = "writing"

    @property
    def module(self) -> Module:
        return Module(self.value.upper())


class ProgressPayload(BaseModel):
    time_spent: int | None = None
    current_section: int | None = None
    audio_started_at: str | None = None
    audio_time_spent: int | None = None
    audio_completed: bool | None = None
    warning_shown: bool | None = None
    current_passage: int | None = None
    current_task: int | None = None
    task1_word_count: int | None = None
    task2_word_count: int | None = None


class AnswerPayload(BaseModel):
    user_answer: str = ""
    time_spent: int = Field(default=1, ge=0)


class SubmittedAnswerPayload(BaseModel):
    question_id: str
    user_answer: str = ""
    time_spent: int = Field(default=0, ge=0)


class SubmitPayload(BaseModel):
    answers: list[SubmittedAnswerPayload] = Field(default_factory=list)


class ForceEndPayload(BaseModel):
    user_id: str
    reason: str = "Administrative action"


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def create_api_app(services: Services, sweep_interval_seconds: float | None = None) -> FastAPI:
    """Create a FastAPI application wired to the provided services."""
    scheduler = None
    if sweep_interval_seconds:
        scheduler = SweepScheduler(services.registry, sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="IELTS Test Session Service", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    # Test catalog
    @app.get("/{module}/tests")
    def list_tests(module: ModuleName):
        tests = services.manager(module.module).list_tests()
        return {"tests": [content.summary() for content in tests], "total": len(tests)}

    # Test lifecycle
    @app.post("/{module}/tests/{test_id}/start", status_code=201)
    def start_test(module: ModuleName, test_id: str, user_id: str = Depends(current_user)):
        started = services.manager(module.module).start_test(user_id, test_id)
        return {"success": True, **started.to_dict()}

    @app.patch("/{module}/attempts/{attempt_id}/progress")
    def update_progress(module: ModuleName, attempt_id: str, payload: ProgressPayload,
                        user_id: str = Depends(current_user)):
        fields = payload.model_dump(exclude_none=True)
        attempt = services.manager(module.module).update_progress(attempt_id, fields, user_id=user_id)
        return {"success": True, "attempt": attempt}

    @app.put("/{module}/attempts/{attempt_id}/answers/{question_id}")
    def save_answer(module: ModuleName, attempt_id: str, question_id: str, payload: AnswerPayload,
                    user_id: str = Depends(current_user)):
        answer = services.manager(module.module).save_answer(
            attempt_id, question_id, payload.user_answer, user_id=user_id, time_spent=payload.time_spent
        )
        return {
            "success": True,
            "question_id": answer.question_id,
            "question_number": answer.question_number,
            "user_answer": answer.user_answer,
            "time_spent": answer.time_spent,
        }

    @app.post("/{module}/attempts/{attempt_id}/submit")
    def submit(module: ModuleName, attempt_id: str, payload: SubmitPayload | None = None,
               user_id: str = Depends(current_user)):
        answers = [
            SubmittedAnswer(a.question_id, a.user_answer, a.time_spent)
            for a in (payload.answers if payload else [])
        ]
        outcome = services.manager(module.module).submit(attempt_id, answers, user_id=user_id)
        return {"success": True, **outcome.to_dict()}

    @app.post("/{module}/attempts/{attempt_id}/abandon")
    def abandon(module: ModuleName, attempt_id: str, user_id: str = Depends(current_user)):
        changed = services.manager(module.module).abandon(attempt_id, user_id=user_id)
        return {"success": True, "abandoned": changed}

    @app.get("/{module}/attempts/active")
    def active_attempt(module: ModuleName, user_id: str = Depends(current_user)):
        attempt = services.manager(module.module).active_attempt(user_id)
        return {"attempt": attempt.to_summary() if attempt else None}

    @app.get("/{module}/attempts/{attempt_id}/stats")
    def get_stats(module: ModuleName, attempt_id: str, user_id: str = Depends(current_user)):
        return services.manager(module.module).get_stats(attempt_id, user_id=user_id)

    @app.get("/{module}/attempts/{attempt_id}/result")
    def get_result(module: ModuleName, attempt_id: str, user_id: str = Depends(current_user)):
        return services.manager(module.module).get_result(attempt_id, user_id=user_id).to_dict()

    @app.get("/{module}/quota")
    def quota_status(module: ModuleName, user_id: str = Depends(current_user)):
        return services.quota.can_start(user_id, module.module).to_dict()

    # Global sessions
    @app.get("/sessions/active")
    def active_session(user_id: str = Depends(current_user)):
        view = services.registry.active_session_for(user_id)
        return {"has_active_session": view is not None, "session": view.to_dict() if view else None}

    @app.get("/sessions/history")
    def session_history(page: int = 1, limit: int = 10, user_id: str = Depends(current_user)):
        history = services.registry.history(user_id, page=page, limit=limit)
        return {
            "sessions": [services.registry.view(s).to_dict() for s in history["sessions"]],
            "pagination": history["pagination"],
        }

    @app.post("/sessions/force-end")
    def force_end(payload: ForceEndPayload):
        count = services.registry.force_end_all(payload.user_id, payload.reason)
        return {"success": True, "ended_sessions": count}

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "IELTS Test Session Service"}

    return app


def build_app() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    services = build_services(settings)
    return create_api_app(services, sweep_interval_seconds=settings.sweep_interval_seconds)


def main():
    uvicorn.run("ielts_core.app:build_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
