from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from approval_agent_loop.api.identity import resolve_identity
from approval_agent_loop.api.schemas import (
    ApprovalRequestModel,
    ChatMessage,
    ConversationRequest,
    ConversationResponse,
    ErrorResponse,
    PendingApprovalResponse,
    SessionUpdateRequest,
    Usage,
)
from approval_agent_loop.bootstrap import AppRuntime
from approval_agent_loop.errors import OrchestratorError, ValidationError
from approval_agent_loop.models import CompletedTurn, HistoryMessage, Identity
from approval_agent_loop.orchestrator import validate_approvals

_MAX_SESSION_LIST = 100


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def create_app(runtime: AppRuntime) -> FastAPI:
    app = FastAPI(
        title="Approval Agent Loop",
        description="Conversational agent orchestrator with human-in-the-loop tool approval.",
        version="0.1.0",
    )

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc}")
        return _error(exc.status_code, exc.public_message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = first.get("msg", "Invalid request")
        return _error(400, f"{location}: {detail}" if location else detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.opt(exception=exc).error(f"Unexpected error in {request.method} {request.url.path}")
        return _error(500, "An unexpected error occurred")

    def identify(user_id: Optional[str], organization_id: Optional[str]) -> Identity:
        return resolve_identity(runtime.organizations, user_id, organization_id)

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.post(
        "/conversation",
        response_model=ConversationResponse | PendingApprovalResponse,
        response_model_by_alias=True,
        responses={
            400: {"model": ErrorResponse},
            401: {"model": ErrorResponse},
            402: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
            504: {"model": ErrorResponse},
        },
    )
    async def conversation(
        body: ConversationRequest,
        x_user_id: Optional[str] = Header(default=None),
        x_organization_id: Optional[str] = Header(default=None),
    ) -> ConversationResponse | PendingApprovalResponse:
        # Reject bad input before identity lookup touches the store.
        decisions = validate_approvals(body.approvals)
        if not body.message.strip() and not decisions:
            raise ValidationError("Message is required")

        identity = identify(x_user_id, x_organization_id)
        result = await runtime.orchestrator.handle_message(
            identity,
            body.message,
            [HistoryMessage(role=m.role, content=m.content, timestamp=m.timestamp) for m in body.conversation_history],
            session_id=body.session_id,
            agent_mode=body.agent_mode,
            approvals=decisions or None,
        )

        if isinstance(result, CompletedTurn):
            return ConversationResponse(
                message=result.message,
                session_id=result.session_id,
                agent_mode=result.agent_mode,
                approval_rejected=result.approval_rejected,
                usage=Usage(
                    active_agent=result.active_agent,
                    tools_used=list(result.tools_used),
                    credits_used=result.credits_used,
                ),
            )
        return PendingApprovalResponse(
            message=result.message,
            session_id=result.session_id,
            approval_requests=[ApprovalRequestModel(**r.to_dict()) for r in result.approval_requests],
            conversation_history=[ChatMessage(**m.to_dict()) for m in result.conversation_history],
        )

    @app.get("/sessions")
    async def list_sessions(
        limit: int = Query(default=20, ge=1, le=_MAX_SESSION_LIST),
        x_user_id: Optional[str] = Header(default=None),
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        identity = identify(x_user_id, x_organization_id)
        sessions = runtime.sessions.list_sessions(identity.organization_id, limit=limit)
        return {"sessions": [s.to_dict() for s in sessions]}

    @app.get("/sessions/{session_id}")
    async def get_session(
        session_id: str,
        x_user_id: Optional[str] = Header(default=None),
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        identity = identify(x_user_id, x_organization_id)
        session = runtime.sessions.get_session(session_id)
        if session is None or session.organization_id != identity.organization_id:
            return _error(404, "Session not found")
        interactions = runtime.sessions.list_interactions(session_id)
        return {"session": session.to_dict(), "interactions": [i.to_dict() for i in interactions]}

    @app.patch("/sessions/{session_id}")
    async def update_session(
        session_id: str,
        body: SessionUpdateRequest,
        x_user_id: Optional[str] = Header(default=None),
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        identity = identify(x_user_id, x_organization_id)
        session = runtime.sessions.get_session(session_id)
        if session is None or session.organization_id != identity.organization_id:
            return _error(404, "Session not found")
        if body.title is None and body.starred is None:
            raise ValidationError("Nothing to update")
        updated = runtime.sessions.update_session(session_id, title=body.title, starred=body.starred)
        return {"session": updated.to_dict()}

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "healthy", "service": "approval-agent-loop"}

    return app
