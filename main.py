"""
FastAPI wrapper for BridgeScore - call scoring, rescoring and coaching API
"""

import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Type

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from bridgescore.coaching import CoachingAnalyzer
from bridgescore.config import Settings, configure_logging
from bridgescore.errors import (
    BridgeScoreError, InvalidFrameworkError, InvalidInputError, PartialWriteError,
    ScoringFailedError, UnknownCallError, UnknownRuleVersionError,
)
from bridgescore.pivots import PivotMatcher
from bridgescore.repositories import ScoreStore
from bridgescore.rescore import RescoreOrchestrator
from bridgescore.schemas import Call, FrameworkConfig, HistoryEntry
from bridgescore.sqlite_store import open_store

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[Type[BridgeScoreError], int] = {
    InvalidInputError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidFrameworkError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ScoringFailedError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnknownCallError: status.HTTP_404_NOT_FOUND,
    UnknownRuleVersionError: status.HTTP_404_NOT_FOUND,
    PartialWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Request models
class SubmitCallRequest(BaseModel):
    transcript: str
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    rule_version_id: Optional[str] = None


class RescoreRequest(BaseModel):
    rule_version_id: Optional[str] = None


def _step_payload(step, framework: FrameworkConfig) -> dict:
    return {
        "step_key": step.step_key,
        "name": framework.step_name(step.step_key),
        "credit": step.credit,
        "weight": step.weight,
        "notes": step.notes,
        "color": step.color.value,
    }


def _call_payload(call: Call, framework: FrameworkConfig, include_transcript: bool = False) -> dict:
    payload = {
        "id": call.id,
        "org_id": call.org_id,
        "user_id": call.user_id,
        "score_total": call.total,
        "max_score": call.breakdown.max_score,
        "score_breakdown": call.breakdown.to_record(),
        "steps": [_step_payload(step, framework) for step in call.breakdown.steps],
        "rule_version_id": call.rule_version_id,
        "framework_version": call.framework_version,
        "created_at": call.created_at,
        "updated_at": call.updated_at,
    }
    if include_transcript:
        payload["transcript"] = call.transcript
    return payload


def _history_payload(entry: HistoryEntry) -> dict:
    record = entry.to_record()
    record["max_score"] = entry.breakdown.max_score
    return record


def create_app(settings: Optional[Settings] = None, store: Optional[ScoreStore] = None) -> FastAPI:
    """Build the API; the store is opened on startup unless one is passed in"""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = app.state.store is None
        if owns_store:
            _attach(app, open_store(settings))
            logger.info(f"Opened score store at {settings.db_path}")
        try:
            yield
        finally:
            if owns_store:
                app.state.store.close()
                app.state.store = None

    app = FastAPI(
        title="BridgeScore - Call Scoring API",
        description="Rule-based sales call scoring, rescoring history and coaching",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = None
    if store is not None:
        _attach(app, store)

    @app.exception_handler(BridgeScoreError)
    async def handle_core_error(request: Request, exc: BridgeScoreError):
        code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "bridgescore-api",
            "environment": os.getenv("ENVIRONMENT", "development"),
        }

    @app.post("/calls", tags=["Calls"], status_code=status.HTTP_201_CREATED)
    async def submit_call(body: SubmitCallRequest, request: Request):
        """Score a new transcript with the organization's active rule version and store it"""
        state = request.app.state
        call = state.orchestrator.submit(body.org_id, body.transcript, body.user_id, body.rule_version_id)
        logger.info(f"Stored call {call.id} with score {call.total}")
        return _call_payload(call, state.store.frameworks.get_for_org(call.org_id))

    @app.get("/calls", tags=["Calls"])
    async def list_calls(request: Request, org_id: Optional[str] = None):
        state = request.app.state
        if state.settings.org_scoped and org_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="org_id is required when calls are organization-scoped",
            )
        calls = state.store.calls.list(org_id)
        framework = state.store.frameworks.get_for_org(org_id)
        return {
            "calls": [_call_payload(call, framework) for call in calls],
            "count": len(calls),
        }

    @app.get("/calls/{call_id}", tags=["Calls"])
    async def get_call(call_id: str, request: Request):
        call = _get_call(request, call_id)
        return _call_payload(call, request.app.state.store.frameworks.get_for_org(call.org_id),
                             include_transcript=True)

    @app.post("/calls/{call_id}/rescore", tags=["Calls"])
    async def rescore_call(call_id: str, request: Request, body: Optional[RescoreRequest] = None):
        """
        Re-run scoring under a rule version (the organization's active one by default).
        A history entry is written only when the score changed.
        """
        state = request.app.state
        result = state.orchestrator.rescore(call_id, body.rule_version_id if body else None)
        call = state.store.calls.get(call_id)
        framework = state.store.frameworks.get_for_org(call.org_id)
        return {
            "call": _call_payload(call, framework),
            "changed": result.changed,
            "history_written": result.history_written,
            "previous_total": result.previous_total,
            "previous_rule_version_id": result.previous_rule_version_id,
        }

    @app.get("/calls/{call_id}/history", tags=["History"])
    async def call_history(call_id: str, request: Request):
        _get_call(request, call_id)
        entries = request.app.state.orchestrator.ledger.list_for(call_id)
        return {
            "call_id": call_id,
            "history": [_history_payload(entry) for entry in entries],
            "count": len(entries),
        }

    @app.get("/calls/{call_id}/coaching", tags=["Coaching"])
    async def call_coaching(call_id: str, request: Request):
        """Strengths, areas for improvement and pivot prompts for each weak step"""
        call = _get_call(request, call_id)
        store = request.app.state.store
        framework = store.frameworks.get_for_org(call.org_id)
        analysis = CoachingAnalyzer().analyze(call.breakdown)
        matcher = PivotMatcher(store.pivots, org_id=call.org_id)

        improvements = []
        for step in analysis.improvements:
            suggestions = matcher.lookup(step.step_key)
            payload = _step_payload(step, framework)
            payload["pivots"] = suggestions.prompts
            payload["more_pivots"] = suggestions.more_count
            improvements.append(payload)

        return {
            "call_id": call_id,
            "score_total": call.total,
            "strengths": [_step_payload(step, framework) for step in analysis.strengths],
            "improvements": improvements,
        }

    @app.get("/pivots/{step_key}", tags=["Coaching"])
    async def step_pivots(step_key: str, request: Request, org_id: Optional[str] = None):
        suggestions = PivotMatcher(request.app.state.store.pivots, org_id=org_id).lookup(step_key)
        return suggestions.model_dump()

    return app


def _attach(app: FastAPI, store: ScoreStore):
    app.state.store = store
    app.state.orchestrator = RescoreOrchestrator(store, app.state.settings)


def _get_call(request: Request, call_id: str) -> Call:
    call = request.app.state.store.calls.get(call_id)
    if call is None:
        raise UnknownCallError(call_id)
    return call


settings = Settings.from_env()
configure_logging(settings)
app = create_app(settings)

if __name__ == "__main__":
    # For local development
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        log_level=settings.log_level.lower()
    )
