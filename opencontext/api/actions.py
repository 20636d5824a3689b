"""
Pending action and protection endpoints.

Approving an action applies it to the store; dismissing it with a reason
protects the affected entries from that kind of action.
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .schemas import (
    PendingActionResponse, PendingActionListResponse, DecisionResponse, DismissRequest,
    BulkDecisionRequest, BulkDecisionResponse, ProtectionCreateRequest, ProtectionResponse,
    ProtectionListResponse, ProtectionRemoveResponse,
)
from ..core.config import ImproverConfig
from ..core.control_plane import ControlPlane, PendingAction
from ..core.improver import approve_and_execute
from ..core.observer import Observer
from ..core.protections import Protection
from ..core.risk import risk_at_least
from ..core.schema import load_schema
from ..core.store import ContextStore

router = APIRouter()


class Services:
    """The store, observer and control plane for one store directory."""

    def __init__(self, config: ImproverConfig):
        self.config = config
        config.ensure_directories()
        self.store = ContextStore(config.db_path)
        self.observer = Observer(config.observer_path)
        self.control_plane = ControlPlane(self.observer, config)

    @property
    def schema(self):
        # Re-read so schema edits apply without a restart
        return load_schema(self.config.schema_path)


@lru_cache(maxsize=1)
def get_services() -> Services:
    """FastAPI dependency; tests override it with their own Services."""
    return Services(ImproverConfig.from_env())


def _pending_response(action: PendingAction) -> PendingActionResponse:
    return PendingActionResponse(
        id=action.id,
        type=action.type,
        risk=action.risk,
        description=action.description,
        reasoning=action.reasoning,
        preview=action.preview,
        action=action.action.to_dict(),
        status=action.status,
        created_at=action.created_at,
        expires_at=action.expires_at,
        dismiss_reason=action.dismiss_reason,
    )


def _protection_response(protection: Protection) -> ProtectionResponse:
    return ProtectionResponse(
        entry_id=protection.entry_id,
        pattern=protection.pattern,
        scope=protection.scope,
        protected_from=protection.protected_from,
        reason=protection.reason,
        created_at=protection.created_at,
    )


# Define /pending-actions/bulk BEFORE /pending-actions/{action_id} routes
@router.post("/pending-actions/bulk", response_model=BulkDecisionResponse)
def bulk_decision(request: BulkDecisionRequest, services: Services = Depends(get_services)):
    """Approve or dismiss several actions; each id is handled independently."""
    if request.decision == "approve":
        results = []
        for action_id in request.action_ids:
            outcome = approve_and_execute(services.control_plane, action_id, services.store, services.schema)
            results.append({"id": action_id, "executed": outcome.executed, "result": outcome.result})
    else:
        results = services.control_plane.bulk_dismiss(request.action_ids, request.reason)

    return BulkDecisionResponse(decision=request.decision, results=results)


@router.get("/pending-actions", response_model=PendingActionListResponse)
def list_pending_actions(
    status: str = Query("pending", description="pending, approved, dismissed, expired or all"),
    min_risk: Optional[str] = Query(None, description="Only actions at or above this risk tier"),
    services: Services = Depends(get_services),
):
    actions = services.control_plane.list_actions(None if status == "all" else status)
    if min_risk:
        actions = [a for a in actions if risk_at_least(a.risk, min_risk)]
    return PendingActionListResponse(actions=[_pending_response(a) for a in actions])


@router.get("/pending-actions/{action_id}", response_model=PendingActionResponse)
def get_pending_action(action_id: str, services: Services = Depends(get_services)):
    action = services.control_plane.get_action(action_id)
    if action is None:
        raise HTTPException(status_code=404, detail=f'No pending action found with ID "{action_id}".')
    return _pending_response(action)


@router.post("/pending-actions/{action_id}/approve", response_model=DecisionResponse)
def approve_pending_action(action_id: str, services: Services = Depends(get_services)):
    """Approve an action and apply it to the store."""
    outcome = approve_and_execute(services.control_plane, action_id, services.store, services.schema)
    if not outcome.executed:
        # 404 for an unknown id, 409 for an action that was already decided
        raise HTTPException(status_code=404 if outcome.action is None else 409, detail=outcome.result)
    return DecisionResponse(success=True, id=action_id, message=outcome.result)


@router.post("/pending-actions/{action_id}/dismiss", response_model=DecisionResponse)
def dismiss_pending_action(action_id: str, request: Optional[DismissRequest] = None,
                           services: Services = Depends(get_services)):
    reason = request.reason if request else None
    if not services.control_plane.dismiss(action_id, reason):
        existing = services.control_plane.get_action(action_id)
        if existing is None:
            raise HTTPException(status_code=404, detail=f'No pending action found with ID "{action_id}".')
        raise HTTPException(status_code=409, detail=f"Action {action_id} is already {existing.status}.")
    return DecisionResponse(success=True, id=action_id, message=f"Action {action_id} dismissed.")


@router.get("/protections", response_model=ProtectionListResponse)
def list_protections(services: Services = Depends(get_services)):
    return ProtectionListResponse(
        protections=[_protection_response(p) for p in services.control_plane.list_protections()]
    )


@router.post("/protections", response_model=ProtectionResponse)
def add_protection(request: ProtectionCreateRequest, services: Services = Depends(get_services)):
    """Add a standing veto for an entry or for a whole action kind."""
    try:
        protection = Protection(
            entry_id=request.entry_id,
            pattern=request.pattern,
            scope=request.scope,
            protected_from=request.protected_from,
            reason=request.reason,
            created_at=datetime.now(timezone.utc),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _protection_response(services.control_plane.add_protection(protection))


@router.delete("/protections", response_model=ProtectionRemoveResponse)
def remove_protection(entry_id: str, action_type: str, services: Services = Depends(get_services)):
    removed = services.control_plane.remove_protection(entry_id, action_type)
    if not removed:
        raise HTTPException(status_code=404, detail="No matching protection")
    return ProtectionRemoveResponse(removed=removed)
