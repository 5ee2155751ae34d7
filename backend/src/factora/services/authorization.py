"""
Role and ownership guard evaluated before every lifecycle action.

The gate re-reads the caller's profile from the store on every call, so
the role that matters is always the stored one. It has no notion of
trusted or UI-only callers: internal code and HTTP requests go through
the same checks.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from factora.domain.errors import AuthenticationError, AuthorizationError
from factora.domain.models import Invoice, Profile, Role, normalize_email
from factora.infrastructure.store import InvoiceStore

from .identity import Identity

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Actions subject to authorization."""
    CREATE = "create"
    ACKNOWLEDGE = "acknowledge"
    LIST = "list"
    BUY = "buy"
    ROLLBACK = "rollback"
    RECONCILE = "reconcile"
    VIEW = "view"


CAPABILITIES: dict[Role, frozenset[Action]] = {
    Role.MSME: frozenset({Action.CREATE, Action.LIST, Action.VIEW}),
    Role.BUYER: frozenset({Action.ACKNOWLEDGE, Action.VIEW}),
    Role.INVESTOR: frozenset({Action.BUY, Action.ROLLBACK, Action.VIEW}),
}

SYSTEM_CAPABILITIES = frozenset({Action.RECONCILE, Action.ROLLBACK, Action.VIEW})


@dataclass(frozen=True)
class ActorContext:
    """An authorized caller: the identity plus its stored profile (None for system)."""
    identity: Identity
    profile: Profile | None

    @property
    def is_system(self) -> bool:
        return self.identity.is_system

    @property
    def actor_id(self) -> str:
        return self.profile.id if self.profile else self.identity.subject


class AuthorizationGate:
    """
    Role x action capability matrix plus ownership checks.

    Ownership rules:
    - list: invoice.created_by is the caller
    - acknowledge: invoice.buyer_email equals the caller's profile email
    - rollback: the caller holds the Settling lock
    - view: owner MSME, addressed buyer, or any investor once listed
    """

    def __init__(self, store: InvoiceStore) -> None:
        self.store = store

    async def authorize(
        self,
        identity: Identity | None,
        action: Action,
        invoice: Invoice | None = None,
    ) -> ActorContext:
        """
        Authorize an action for an identity.

        Returns:
            ActorContext with the stored profile

        Raises:
            AuthenticationError: no identity
            AuthorizationError: missing profile, role or ownership mismatch
        """
        if identity is None or not identity.subject:
            raise AuthenticationError("Unauthorized")

        if identity.is_system:
            if action not in SYSTEM_CAPABILITIES:
                raise AuthorizationError(f"System context cannot {action.value} invoices")
            return ActorContext(identity=identity, profile=None)

        profile = await self.store.get_profile(identity.subject)
        if profile is None:
            raise AuthorizationError("Profile not found")

        if identity.claimed_role and identity.claimed_role != profile.role.value:
            logger.info(
                f"Ignoring asserted role {identity.claimed_role!r} for {profile.id} "
                f"(stored role {profile.role.value})"
            )

        if action not in CAPABILITIES[profile.role]:
            raise AuthorizationError(
                f"Role {profile.role.value} cannot {action.value} invoices",
                context={"action": action.value, "role": profile.role.value},
            )

        if invoice is not None:
            self._check_ownership(profile, action, invoice)

        return ActorContext(identity=identity, profile=profile)

    def _check_ownership(self, profile: Profile, action: Action, invoice: Invoice) -> None:
        if action is Action.LIST and invoice.created_by != profile.id:
            raise AuthorizationError("Cannot list invoice not owned by this MSME")

        if action is Action.ACKNOWLEDGE and normalize_email(invoice.buyer_email) != normalize_email(profile.email):
            raise AuthorizationError("Invoice not addressed to this buyer")

        if action is Action.ROLLBACK and invoice.settling_investor_id != profile.id:
            raise AuthorizationError("Only the investor holding the purchase can roll it back")

        if action is Action.VIEW and not self.can_view(profile, invoice):
            raise AuthorizationError("Invoice not visible to this profile")

    @staticmethod
    def can_view(profile: Profile, invoice: Invoice) -> bool:
        if profile.role is Role.MSME:
            return invoice.created_by == profile.id
        if profile.role is Role.BUYER:
            return normalize_email(invoice.buyer_email) == normalize_email(profile.email)
        return invoice.is_listed_or_later
