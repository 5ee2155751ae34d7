"""
Caller identity and identity-token verification.

Identity issuance (sign-up, login, sessions) belongs to the external
identity provider. This module only verifies the bearer token it issued
and turns it into an explicit Identity value that is passed into every
action. There is no ambient session state.

A role claim inside the token is kept for logging only; authorization
always reads the role from the stored profile.
"""

import logging
from dataclasses import dataclass
from typing import Any

import jwt

from factora.config import Settings
from factora.domain.errors import AuthenticationError

logger = logging.getLogger(__name__)

SYSTEM_SUBJECT = "system"


@dataclass(frozen=True)
class Identity:
    """The authenticated subject behind a request."""
    subject: str
    email: str | None = None
    claimed_role: str | None = None
    is_system: bool = False

    @classmethod
    def system(cls) -> "Identity":
        """Internal operator context. Never produced from a request token."""
        return cls(subject=SYSTEM_SUBJECT, is_system=True)


def decode_identity_token(token: str | None, settings: Settings) -> Identity:
    """
    Verify an identity token and extract the subject.

    Args:
        token: Raw bearer token (without the "Bearer " prefix)
        settings: Application settings with the verification secret

    Returns:
        Identity for the token subject

    Raises:
        AuthenticationError: if the token is missing, invalid or expired
    """
    if not token:
        raise AuthenticationError("Unauthorized")
    if not settings.jwt_secret:
        logger.error("Identity token received but JWT_SECRET is not configured")
        raise AuthenticationError("Identity verification is not configured")

    options: dict[str, Any] = {"require": ["sub", "exp"]}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected identity token: {e}")
        raise AuthenticationError("Invalid token")

    subject = str(payload["sub"])
    if subject == SYSTEM_SUBJECT:
        raise AuthenticationError("Invalid token")

    return Identity(
        subject=subject,
        email=payload.get("email"),
        claimed_role=payload.get("role"),
    )
