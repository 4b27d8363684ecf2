"""
FastAPI application for the claims engine.

Provides:
- Claim submission, lookup, patch and delete endpoints
- Approve / reject / escalate workflow endpoints
- Analytics endpoints for the HR dashboard and fraud panel

The caller's identity comes from the ``X-Actor-Id``, ``X-Actor-Role`` and
``X-Actor-Name`` headers; authenticating them is the gateway's job.
"""

import logging

# Reduce noise from verbose libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("python_multipart").setLevel(logging.WARNING)

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..claims.errors import (
    ClaimNotFoundError,
    ClaimsError,
    ClaimValidationError,
    InvalidTransitionError,
    RolePermissionError,
    UpstreamError,
)
from ..claims.schema import ClaimInput, ClaimStatus, Role
from ..engine import ClaimsEngine, build_engine
from ..utils.config import settings

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


ERROR_STATUS = {
    ClaimValidationError: 422,
    ClaimNotFoundError: 404,
    RolePermissionError: 403,
    InvalidTransitionError: 409,
    UpstreamError: 503,
}

# Only the workflow endpoints may change these
WORKFLOW_FIELDS = frozenset({
    "status", "reviewer_id", "reviewer_name", "reviewer_comment", "decided_at",
    "escalated", "escalation_level", "approval_history", "risk_score", "flags",
})


@dataclass
class Actor:
    """Caller identity taken from request headers."""
    id: str
    role: str
    name: Optional[str] = None


def get_actor(
    x_actor_id: str = Header("anonymous"),
    x_actor_role: str = Header(Role.EMPLOYEE.value),
    x_actor_name: Optional[str] = Header(None),
) -> Actor:
    return Actor(id=x_actor_id, role=x_actor_role.lower(), name=x_actor_name)


class DecisionRequest(BaseModel):
    """Body of approve/reject/escalate calls."""
    reason: Optional[str] = Field(None, description="Required to reject or escalate")
    comment: Optional[str] = Field(None, description="Optional note on approval")


class BulkApproveRequest(BaseModel):
    claim_ids: List[str] = Field(min_length=1)
    comment: Optional[str] = None


def _dump(items) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def create_app(engine: Optional[ClaimsEngine] = None) -> FastAPI:
    """
    Build the HTTP app around an engine.

    Args:
        engine: Engine to serve (defaults to ``build_engine()`` on SQLite)
    """
    engine = engine or build_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting claims engine server...")
        await engine.start()
        yield
        logger.info("Shutting down claims engine server...")

    app = FastAPI(
        title="Expense Claims Engine",
        description="Expense claim submission, approval workflow and analytics",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.exception_handler(ClaimsError)
    async def claims_error_handler(request: Request, exc: ClaimsError):
        status = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            400,
        )
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed upstream: {exc}")
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    # =========================================================================
    # Health Check Endpoints
    # =========================================================================

    @app.get("/")
    async def root():
        """Root endpoint - basic health check."""
        return {
            "service": "Expense Claims Engine",
            "status": "running",
            "claims": len(engine.store),
        }

    @app.get("/health")
    async def health_check():
        """Detailed health check endpoint."""
        return {
            "status": "healthy",
            "claims": len(engine.store),
            "store_version": engine.store.version,
            "listeners": engine.bus.listener_count(),
            "last_refreshed_at": (
                engine.store.last_refreshed_at.isoformat() if engine.store.last_refreshed_at else None
            ),
            "config": {
                "high_risk_threshold": engine.settings.high_risk_threshold,
                "fetch_timeout_seconds": engine.settings.fetch_timeout_seconds,
            },
        }

    # =========================================================================
    # Claims
    # =========================================================================

    @app.get("/claims")
    async def list_claims(
        department: Optional[str] = None,
        status: Optional[ClaimStatus] = None,
        category: Optional[str] = None,
        employee_id: Optional[str] = None,
    ):
        claims = engine.store.list_by_filter(
            department=department,
            status=status,
            category=category,
            employee_id=employee_id,
        )
        claims.sort(key=lambda c: (c.submitted_at, c.id), reverse=True)
        return {"claims": _dump(claims), "count": len(claims)}

    @app.post("/claims", status_code=201)
    async def create_claim(claim_input: ClaimInput, actor: Actor = Depends(get_actor)):
        if claim_input.employee_id is None and actor.id != "anonymous":
            claim_input = claim_input.model_copy(update={"employee_id": actor.id})
        submission = await engine.submit(claim_input)
        return submission.claim.model_dump(mode="json")

    @app.get("/claims/{claim_id}")
    async def get_claim(claim_id: str):
        return engine.store.require(claim_id).model_dump(mode="json")

    @app.patch("/claims/{claim_id}")
    async def patch_claim(claim_id: str, patch: Dict[str, Any]):
        workflow_fields = sorted(WORKFLOW_FIELDS & set(patch))
        if workflow_fields:
            raise ClaimValidationError(
                [f"{field}: change it through the approve/reject/escalate endpoints" for field in workflow_fields]
            )
        claim = await engine.store.update(claim_id, patch)
        return claim.model_dump(mode="json")

    @app.delete("/claims/{claim_id}", status_code=204)
    async def delete_claim(claim_id: str):
        await engine.store.remove(claim_id)

    # =========================================================================
    # Workflow
    # =========================================================================

    @app.post("/claims/{claim_id}/approve")
    async def approve_claim(claim_id: str, body: DecisionRequest = DecisionRequest(), actor: Actor = Depends(get_actor)):
        claim = await engine.workflow.approve(claim_id, actor.role, actor.id, actor.name, body.comment)
        return claim.model_dump(mode="json")

    @app.post("/claims/{claim_id}/reject")
    async def reject_claim(claim_id: str, body: DecisionRequest, actor: Actor = Depends(get_actor)):
        claim = await engine.workflow.reject(claim_id, actor.role, body.reason or "", actor.id, actor.name)
        return claim.model_dump(mode="json")

    @app.post("/claims/{claim_id}/escalate")
    async def escalate_claim(claim_id: str, body: DecisionRequest, actor: Actor = Depends(get_actor)):
        claim = await engine.workflow.escalate(claim_id, actor.role, body.reason or "", actor.id, actor.name)
        return claim.model_dump(mode="json")

    @app.post("/approvals/bulk")
    async def bulk_approve(body: BulkApproveRequest, actor: Actor = Depends(get_actor)):
        results = await engine.workflow.bulk_approve(body.claim_ids, actor.role, actor.id, actor.name, body.comment)
        return {"results": [r.to_dict() for r in results]}

    @app.get("/approvals/queue")
    async def approval_queue(actor: Actor = Depends(get_actor)):
        queue = engine.workflow.pending_queue(actor.role)
        return {"claims": _dump(queue), "count": len(queue)}

    # =========================================================================
    # Analytics
    # =========================================================================

    @app.get("/analytics/overview")
    async def overview():
        return engine.analytics.overview().model_dump(mode="json")

    @app.get("/analytics/departments")
    async def departments():
        return {"departments": _dump(engine.analytics.department_summary())}

    @app.get("/analytics/categories")
    async def categories():
        return {"categories": _dump(engine.analytics.category_summary())}

    @app.get("/analytics/employees")
    async def employees():
        return {"employees": _dump(engine.analytics.employee_summary())}

    @app.get("/analytics/trend")
    async def trend(periods: int = Query(6, ge=1, le=36)):
        return {
            "trend": _dump(engine.analytics.trend(periods)),
            "category_trends": _dump(engine.analytics.category_trends()),
        }

    @app.get("/analytics/approvals")
    async def approval_statistics(actor_id: Optional[str] = None):
        return engine.analytics.approval_statistics(actor_id).model_dump(mode="json")

    @app.get("/analytics/fraud")
    async def fraud(min_score: int = Query(0, ge=0, le=100)):
        return {"cases": _dump(engine.analytics.fraud_overview(min_score))}

    @app.get("/analytics/budget/{department}")
    async def budget(department: str):
        return engine.analytics.budget_utilization(department).model_dump(mode="json")

    return app
