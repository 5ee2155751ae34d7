"""
FastAPI dependencies.

Service objects are module-level lazy singletons; tests replace them with
``app.dependency_overrides``.
"""

import hmac
import logging

from fastapi import Depends, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from factora.config import Settings, get_settings
from factora.domain.errors import AuthenticationError, AuthorizationError
from factora.infrastructure.database import SqlInvoiceStore, get_session_factory
from factora.infrastructure.store import InvoiceStore
from factora.services.identity import Identity, decode_identity_token
from factora.services.ledger import LedgerClient
from factora.services.lifecycle import LifecycleEngine
from factora.services.profiles import ProfileRegistry
from factora.services.reconciliation import ReconciliationGuard
from factora.services.xrpl import XRPLLedgerClient, XRPLNetwork

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

_store: InvoiceStore | None = None
_ledger: LedgerClient | None = None


def get_store() -> InvoiceStore:
    global _store
    if _store is None:
        _store = SqlInvoiceStore(get_session_factory())
    return _store


def get_ledger() -> LedgerClient:
    global _ledger
    if _ledger is None:
        settings = get_settings()
        _ledger = XRPLLedgerClient(
            network=XRPLNetwork(settings.xrpl_network),
            wallet_seed=settings.xrpl_wallet_seed,
            xrp_price_usd=settings.xrp_price_usd,
        )
        logger.info(f"Ledger client created for XRPL {settings.xrpl_network}")
    return _ledger


def get_lifecycle(store: InvoiceStore = Depends(get_store)) -> LifecycleEngine:
    return LifecycleEngine(store)


def get_guard(
    engine: LifecycleEngine = Depends(get_lifecycle),
    ledger: LedgerClient = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
) -> ReconciliationGuard:
    return ReconciliationGuard(engine, ledger, confirmation_timeout=settings.ledger_confirmation_timeout)


def get_profiles(store: InvoiceStore = Depends(get_store)) -> ProfileRegistry:
    return ProfileRegistry(store)


def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Identity:
    """Verify the bearer identity token."""
    if credentials is None:
        raise AuthenticationError("Unauthorized")
    return decode_identity_token(credentials.credentials, settings)


def get_operator_identity(
    api_key: str | None = Security(API_KEY_HEADER),
    settings: Settings = Depends(get_settings),
) -> Identity:
    """
    Operator access for reconciliation endpoints.

    The endpoints are disabled unless OPERATOR_API_KEY is configured.
    """
    if not settings.operator_api_key:
        raise AuthorizationError("Operator endpoints are disabled")
    if not api_key:
        raise AuthenticationError("API key required. Provide X-API-Key header.")
    if not hmac.compare_digest(api_key, settings.operator_api_key):
        raise AuthorizationError("Invalid API key")
    return Identity.system()
