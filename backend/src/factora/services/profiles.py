"""
Profile registration (register-identity action).

A profile binds a verified identity subject to a role. It is the only
place the role is ever chosen; every later action reads it back from the
store.
"""

import logging
from datetime import datetime, timezone

from factora.domain.errors import AuthenticationError, NotFoundError, ValidationError
from factora.domain.models import Profile
from factora.domain.validation import parse_email, parse_role
from factora.infrastructure.store import InvoiceStore

from .identity import Identity

logger = logging.getLogger(__name__)


class ProfileRegistry:
    """Creates and reads the authoritative profile for an identity."""

    def __init__(self, store: InvoiceStore) -> None:
        self.store = store

    async def register(
        self,
        identity: Identity | None,
        role: str,
        wallet_address: str | None = None,
    ) -> Profile:
        """
        Register a profile for the authenticated subject.

        The email is taken from the verified identity, never from the payload.

        Raises:
            AuthenticationError: no identity, or a system context
            ValidationError: unknown role or identity without an email
            ConflictError: the subject or email is already registered
        """
        if identity is None or identity.is_system:
            raise AuthenticationError("Unauthorized")
        if not identity.email:
            raise ValidationError("Identity token does not carry an email address")

        profile = Profile(
            id=identity.subject,
            email=parse_email(identity.email, "email"),
            role=parse_role(role),
            wallet_address=(wallet_address or "").strip() or None,
            created_at=datetime.now(timezone.utc),
        )
        stored = await self.store.insert_profile(profile)
        logger.info(f"Registered {stored.role.value} profile {stored.id}")
        return stored

    async def current(self, identity: Identity | None) -> Profile:
        if identity is None or identity.is_system:
            raise AuthenticationError("Unauthorized")
        profile = await self.store.get_profile(identity.subject)
        if profile is None:
            raise NotFoundError("Profile not found")
        return profile

    async def update_wallet(self, identity: Identity | None, wallet_address: str | None) -> Profile:
        """
        Set or clear the wallet address on the caller's profile.

        Only the wallet is editable; the role chosen at registration stays.

        Raises:
            AuthenticationError: no identity, or a system context
            NotFoundError: the caller has not registered
        """
        if identity is None or identity.is_system:
            raise AuthenticationError("Unauthorized")
        wallet = (wallet_address or "").strip() or None
        profile = await self.store.update_profile_wallet(identity.subject, wallet)
        if profile is None:
            raise NotFoundError("Profile not found")
        logger.info(f"Wallet for profile {profile.id} {'updated' if wallet else 'cleared'}")
        return profile
