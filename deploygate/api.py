"""
Attempts API Router - submit, inspect and cancel deployment attempts
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field

from deploygate.errors import InvalidInput
from deploygate.logging_config import get_logger
from deploygate.models import ChangeDescriptor
from deploygate.resilience import CircuitBreaker

logger = get_logger(__name__)

router = APIRouter(tags=["Attempts"])

# Injected from main.py during app startup
_controller = None


def configure(controller):
    """Configure router with the shared PipelineController"""
    global _controller
    _controller = controller


def _get_controller():
    if _controller is None:
        raise HTTPException(status_code=503, detail="pipeline controller not configured")
    return _controller


# Data Models
class ChangeRequest(BaseModel):
    content_ref: str = Field(..., description="Container image or artifact reference")
    revision: str
    environment: str
    job_id: str
    build_id: str
    service: Optional[str] = None
    command: List[str] = []
    labels: Dict[str, str] = {}


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


@router.post("/attempts")
async def create_attempt(change: ChangeRequest, response: Response, wait: bool = False):
    """
    Start a deployment attempt.

    Returns 202 with the live record, or with `?wait=true` blocks until the
    attempt is terminal and returns 200 with the full record.
    """
    controller = _get_controller()
    try:
        descriptor = ChangeDescriptor.from_dict(change.model_dump())
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))

    if wait:
        attempt = await controller.run(descriptor)
        response.status_code = 200
    else:
        attempt = controller.submit(descriptor)
        response.status_code = 202
    return attempt.to_dict()


@router.get("/attempts")
async def list_attempts(state: Optional[str] = None):
    """List retained attempts, optionally filtered by state"""
    attempts = _get_controller().list_attempts()
    if state:
        attempts = [a for a in attempts if a.state.value == state]
    return {
        "count": len(attempts),
        "attempts": [a.to_dict() for a in attempts],
    }


@router.get("/attempts/{attempt_id}")
async def get_attempt(attempt_id: str):
    controller = _get_controller()
    attempt = controller.get(attempt_id)
    if attempt is not None:
        return attempt.to_dict()

    # Evicted from memory; the journal may still have the snapshot
    snapshot = controller.journal.load(attempt_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"attempt {attempt_id} not found")
    return snapshot


@router.post("/attempts/{attempt_id}/cancel")
async def cancel_attempt(attempt_id: str, request: Optional[CancelRequest] = None):
    """Request cancellation; deployed attempts are rolled back"""
    controller = _get_controller()
    attempt = controller.get(attempt_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail=f"attempt {attempt_id} not found")

    reason = request.reason if request else "cancelled by operator"
    accepted = controller.cancel(attempt_id, reason)
    if not accepted:
        raise HTTPException(
            status_code=409,
            detail=f"attempt {attempt_id} is already {attempt.state.value}",
        )
    logger.info(f"[API] Cancellation requested for {attempt_id}: {reason}")
    return {"status": "cancelling", "attempt_id": attempt_id, "state": attempt.state.value}


@router.get("/health")
async def health():
    """Service health with circuit breaker states"""
    breakers = CircuitBreaker.get_all_status()
    status = "healthy"
    if any(b["state"] != "closed" for b in breakers.values()):
        status = "degraded"

    controller = _controller
    return {
        "status": status if controller is not None else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "in_flight_attempts": controller.in_flight if controller is not None else 0,
        "circuit_breakers": breakers,
    }
