"""
Provisioning engine.

Provides:
- StateInspector: read-only snapshots
- IdempotencyPlanner: desired state + snapshot -> action list
- TokenLifecycleManager: unlock secrets and touch policies
- TransferOrchestrator / MultiTokenCoordinator: placing credentials
- RotationEngine: issue and retire derived credentials
- ProvisioningEngine: the executor tying them together
- check_expiry: expiry findings
"""

from .inspector import StateInspector
from .planner import IdempotencyPlanner, plan
from .lifecycle import TokenLifecycleManager, SecretChangeResult, authorizing_kind
from .transfer import TransferOrchestrator, TransferResult
from .coordinator import MultiTokenCoordinator, RedundantResult
from .rotation import RotationEngine, RotationResult
from .executor import ProvisioningEngine, RunReport, ActionResult, ActionOutcome
from .expiry import check_expiry, ExpiryFinding, ExpiryStatus

__all__ = [
    'StateInspector',
    'IdempotencyPlanner',
    'plan',
    'TokenLifecycleManager',
    'SecretChangeResult',
    'authorizing_kind',
    'TransferOrchestrator',
    'TransferResult',
    'MultiTokenCoordinator',
    'RedundantResult',
    'RotationEngine',
    'RotationResult',
    'ProvisioningEngine',
    'RunReport',
    'ActionResult',
    'ActionOutcome',
    'check_expiry',
    'ExpiryFinding',
    'ExpiryStatus',
]
