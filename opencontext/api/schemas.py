"""
Request/response models for the admin API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    entry_count: int
    pending_actions: int


class PendingActionResponse(BaseModel):
    id: str
    type: str
    risk: str  # low, medium, high
    description: str
    reasoning: str
    preview: Dict[str, Any]
    action: Dict[str, Any]
    status: str  # pending, approved, dismissed, expired
    created_at: datetime
    expires_at: datetime
    dismiss_reason: Optional[str] = None


class PendingActionListResponse(BaseModel):
    actions: List[PendingActionResponse]


class DecisionResponse(BaseModel):
    success: bool
    id: str
    message: str


class DismissRequest(BaseModel):
    reason: Optional[str] = None


class BulkDecisionRequest(BaseModel):
    action_ids: List[str]
    decision: str  # approve, dismiss
    reason: Optional[str] = None

    @field_validator('action_ids')
    @classmethod
    def action_ids_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('action_ids cannot be empty')
        return v

    @field_validator('decision')
    @classmethod
    def decision_must_be_valid(cls, v):
        valid_decisions = ['approve', 'dismiss']
        if v not in valid_decisions:
            raise ValueError(f'decision must be one of: {valid_decisions}')
        return v


class BulkDecisionResponse(BaseModel):
    decision: str
    results: List[Dict[str, Any]]


class ProtectionCreateRequest(BaseModel):
    entry_id: Optional[str] = None
    pattern: Optional[str] = None
    scope: Optional[Dict[str, str]] = None
    protected_from: List[str]
    reason: str = ""

    @field_validator('protected_from')
    @classmethod
    def protected_from_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('protected_from cannot be empty')
        return v


class ProtectionResponse(BaseModel):
    entry_id: Optional[str] = None
    pattern: Optional[str] = None
    scope: Optional[Dict[str, str]] = None
    protected_from: List[str]
    reason: str
    created_at: datetime


class ProtectionListResponse(BaseModel):
    protections: List[ProtectionResponse]


class ProtectionRemoveResponse(BaseModel):
    removed: int


class TickResponse(BaseModel):
    started_at: datetime
    completed_at: Optional[datetime] = None
    expired: int
    candidates: List[str]
    executed: List[Dict[str, Any]]
    enqueued: List[str]
    skipped: List[Dict[str, str]]
    errors: List[str]
    deadline_exceeded: bool


class AwarenessResponse(BaseModel):
    summary: str
    self_model: Dict[str, Any]
