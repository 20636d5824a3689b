"""
Control plane - routes improvement actions through risk gating, the pending
action queue and the protection registry.

Pending actions and protections are persisted inside the observer document.
Every mutation holds the observer lock and rewrites the whole document once.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from util.logging import logger

from .actions import ImprovementAction, action_from_dict
from .config import ImproverConfig
from .observer import Observer, as_utc
from .protections import Protection, entry_protections, learn_from_dismissals
from . import protections as registry
from . import risk

PENDING_STATUSES = ("pending", "approved", "dismissed", "expired")

_KNOWN_FIELDS = (
    "id", "created_at", "expires_at", "action", "risk", "description",
    "reasoning", "preview", "status", "dismiss_reason",
)


def new_action_id() -> str:
    return f"pa-{uuid.uuid4().hex[:8]}"


@dataclass
class PendingAction:
    id: str
    created_at: datetime
    expires_at: datetime
    action: ImprovementAction
    risk: str
    description: str
    reasoning: str
    preview: Dict[str, Any] = field(default_factory=dict)
    status: str = "pending"  # pending, approved, dismissed, expired
    dismiss_reason: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.action.kind

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        data = {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "action": self.action.to_dict(),
            "risk": self.risk,
            "description": self.description,
            "reasoning": self.reasoning,
            "preview": self.preview,
            "status": self.status,
        }
        if self.dismiss_reason is not None:
            data["dismiss_reason"] = self.dismiss_reason
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'PendingAction':
        """Create from dictionary (for loading from storage)."""
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            action=action_from_dict(data.get("action") or {}),
            risk=data.get("risk", "high"),
            description=data.get("description", ""),
            reasoning=data.get("reasoning", ""),
            preview=data.get("preview") or {},
            status=data.get("status", "pending"),
            dismiss_reason=data.get("dismiss_reason"),
            # An explicit null dismiss_reason is kept so it is written back as null
            extra={
                k: v for k, v in data.items()
                if k not in _KNOWN_FIELDS or (k == "dismiss_reason" and v is None)
            },
        )


@dataclass
class ApprovalResult:
    executed: bool
    result: str
    action: Optional[PendingAction] = None


class ControlPlane:
    """Risk gate, approval queue and protection registry for one store."""

    def __init__(self, observer: Observer, config: Optional[ImproverConfig] = None):
        self.observer = observer
        self.config = config or ImproverConfig()

    # -- persisted state -------------------------------------------------

    def _load(self) -> Tuple[Dict[str, Any], List[PendingAction], List[Protection]]:
        document = self.observer.load_raw()
        pending = [PendingAction.from_dict(a) for a in document.get("pending_actions", [])]
        protections = [Protection.from_dict(p) for p in document.get("protections", [])]
        return document, pending, protections

    def _save(self, document: Dict[str, Any], pending: List[PendingAction],
              protections: List[Protection]):
        document["pending_actions"] = [a.to_dict() for a in pending]
        document["protections"] = [p.to_dict() for p in protections]
        self.observer.persist_raw(document)

    # -- risk ------------------------------------------------------------

    def classify_risk(self, action) -> str:
        return risk.classify_risk(action)

    def should_auto_execute(self, action) -> bool:
        return risk.should_auto_execute(action, self.config)

    # -- protections -----------------------------------------------------

    def list_protections(self) -> List[Protection]:
        with self.observer.lock:
            return self._load()[2]

    def is_protected(self, entry_id: Optional[str], action_type: str) -> bool:
        return registry.is_protected(self.list_protections(), entry_id, action_type)

    def is_kind_blocked(self, action_type: str) -> bool:
        return registry.is_kind_blocked(self.list_protections(), action_type)

    def add_protection(self, protection: Protection) -> Protection:
        with self.observer.lock:
            document, pending, protections = self._load()
            protections.append(protection)
            self._save(document, pending, protections)

        for action_type in protection.protected_from:
            logger.log_protection_added(action_type, protection.entry_id, protection.pattern)
        return protection

    def remove_protection(self, entry_id: str, action_type: str) -> int:
        """Drop entry-bound protections for entry_id that block action_type."""
        with self.observer.lock:
            document, pending, protections = self._load()
            kept = [
                p for p in protections
                if not (p.entry_id == entry_id and action_type in p.protected_from)
            ]
            removed = len(protections) - len(kept)
            if removed:
                self._save(document, pending, kept)

        if removed:
            logger.log_operation("protection.removed", "success", {
                "entry_id": entry_id,
                "action_type": action_type,
                "count": removed,
            })
        return removed

    # -- queue -----------------------------------------------------------

    def enqueue(self, action: ImprovementAction, description: str, reasoning: str,
                preview: Optional[Dict[str, Any]] = None, risk: Optional[str] = None,
                created_at: Optional[datetime] = None,
                expires_at: Optional[datetime] = None) -> PendingAction:
        """Park an action for human approval."""
        created_at = created_at or datetime.now(timezone.utc)
        if expires_at is None:
            expires_at = created_at + timedelta(milliseconds=self.config.pending_ttl_ms)

        pending_action = PendingAction(
            id=new_action_id(),
            created_at=created_at,
            expires_at=expires_at,
            action=action,
            risk=risk or self.classify_risk(action),
            description=description,
            reasoning=reasoning,
            preview=preview or {},
        )

        with self.observer.lock:
            document, pending, protections = self._load()
            pending.append(pending_action)
            self._save(document, pending, protections)

        logger.log_action_enqueued(pending_action.id, action.kind, pending_action.risk)
        return pending_action

    def list_actions(self, status: Optional[str] = None) -> List[PendingAction]:
        with self.observer.lock:
            actions = self._load()[1]
        if status is None:
            return actions
        return [a for a in actions if a.status == status]

    def list_pending(self) -> List[PendingAction]:
        """Actions still awaiting a decision, in queue order."""
        return self.list_actions("pending")

    def get_action(self, action_id: str) -> Optional[PendingAction]:
        for pending_action in self.list_actions():
            if pending_action.id == action_id:
                return pending_action
        return None

    def approve(self, action_id: str) -> ApprovalResult:
        """Mark a pending action approved.

        Approval only records the decision; applying the mutation is the
        caller's job (see improver.approve_and_execute).
        """
        with self.observer.lock:
            document, pending, protections = self._load()
            target = next((a for a in pending if a.id == action_id), None)

            if target is None:
                return ApprovalResult(False, f'No pending action found with ID "{action_id}".')
            if target.status != "pending":
                return ApprovalResult(False, f"Action {action_id} is already {target.status}.", target)

            target.status = "approved"
            self._save(document, pending, protections)

        logger.log_approval_decision(action_id, "approved")
        return ApprovalResult(True, f"Action {action_id} ({target.type}) approved.", target)

    def dismiss(self, action_id: str, reason: Optional[str] = None) -> bool:
        """Reject a pending action.

        With a reason, every target entry gets a protection against the
        action's kind, and repeated dismissals of one kind are learned as a
        pattern protection.
        """
        learned = None
        with self.observer.lock:
            document, pending, protections = self._load()
            target = next((a for a in pending if a.id == action_id), None)
            if target is None or target.status != "pending":
                return False

            target.status = "dismissed"
            if reason:
                target.dismiss_reason = reason

            entry_ids = target.action.target_entry_ids()
            if reason and entry_ids:
                protections.extend(entry_protections(entry_ids, target.type, reason))
                learned = learn_from_dismissals(pending, protections, target.type)
                if learned is not None:
                    protections.append(learned)

            self._save(document, pending, protections)

        logger.log_approval_decision(action_id, "dismissed", reason or "")
        if learned is not None:
            logger.log_protection_added(target.type, pattern=learned.pattern, learned=True)
        return True

    def bulk_approve(self, action_ids: List[str]) -> List[Dict[str, Any]]:
        results = []
        for action_id in action_ids:
            outcome = self.approve(action_id)
            results.append({"id": action_id, "executed": outcome.executed, "result": outcome.result})
        return results

    def bulk_dismiss(self, action_ids: List[str], reason: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            {"id": action_id, "dismissed": self.dismiss(action_id, reason)}
            for action_id in action_ids
        ]

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Flip pending actions past their expiry to expired; returns the count."""
        now = as_utc(now or datetime.now(timezone.utc))
        with self.observer.lock:
            document, pending, protections = self._load()
            expired = 0
            for pending_action in pending:
                if pending_action.status == "pending" and as_utc(pending_action.expires_at) < now:
                    pending_action.status = "expired"
                    expired += 1
            if expired:
                self._save(document, pending, protections)

        if expired:
            logger.log_actions_expired(expired)
        return expired
