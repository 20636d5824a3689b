"""
Core store, control plane and self-improvement loop.
"""

from .actions import (
    ImprovementAction, AutoTag, MergeDuplicates, PromoteToType, ArchiveStale,
    CreateGapStubs, ResolveContradictions, SuggestSchema, UnknownAction, action_from_dict
)
from .config import ImproverConfig
from .control_plane import ControlPlane, PendingAction, ApprovalResult
from .improver import SelfImprovementTick, TickReport, self_improvement_tick, execute_improvement
from .observer import Observer
from .protections import Protection
from .store import ContextStore, ContextEntry, Bubble

__all__ = [
    'ImprovementAction',
    'AutoTag',
    'MergeDuplicates',
    'PromoteToType',
    'ArchiveStale',
    'CreateGapStubs',
    'ResolveContradictions',
    'SuggestSchema',
    'UnknownAction',
    'action_from_dict',
    'ImproverConfig',
    'ControlPlane',
    'PendingAction',
    'ApprovalResult',
    'SelfImprovementTick',
    'TickReport',
    'self_improvement_tick',
    'execute_improvement',
    'Observer',
    'Protection',
    'ContextStore',
    'ContextEntry',
    'Bubble',
]
