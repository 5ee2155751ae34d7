"""
Services package - Lifecycle logic and external integrations.

Includes authorization, the lifecycle engine, purchase reconciliation,
profile registration and the XRPL ledger client.
"""

from .authorization import Action, AuthorizationGate
from .identity import Identity
from .lifecycle import LifecycleEngine
from .profiles import ProfileRegistry
from .reconciliation import ReconciliationGuard

__all__ = [
    "Action",
    "AuthorizationGate",
    "Identity",
    "LifecycleEngine",
    "ProfileRegistry",
    "ReconciliationGuard",
]
