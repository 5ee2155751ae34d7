"""
Profile endpoints (register-identity).
"""

from fastapi import APIRouter, Depends, status

from factora.api.dependencies import get_identity, get_profiles
from factora.api.schemas import (
    ErrorResponse,
    ProfileEnvelope,
    ProfileResponse,
    RegisterProfileRequest,
    UpdateProfileRequest,
)
from factora.services.identity import Identity
from factora.services.profiles import ProfileRegistry

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.post(
    "/register",
    response_model=ProfileEnvelope,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown role or token without email"},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Identity already registered"},
    },
)
async def register_profile(
    request: RegisterProfileRequest,
    identity: Identity = Depends(get_identity),
    profiles: ProfileRegistry = Depends(get_profiles),
) -> ProfileEnvelope:
    """
    Register the authenticated identity with a role.

    The email comes from the verified token; the role chosen here is the
    one every later action is authorized against.
    """
    profile = await profiles.register(identity, request.role, request.wallet_address)
    return ProfileEnvelope(profile=ProfileResponse.from_domain(profile))


@router.get("/me", response_model=ProfileEnvelope)
async def current_profile(
    identity: Identity = Depends(get_identity),
    profiles: ProfileRegistry = Depends(get_profiles),
) -> ProfileEnvelope:
    profile = await profiles.current(identity)
    return ProfileEnvelope(profile=ProfileResponse.from_domain(profile))


@router.patch(
    "/me",
    response_model=ProfileEnvelope,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed wallet address or non-editable field"},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Identity not registered"},
    },
)
async def update_profile(
    request: UpdateProfileRequest,
    identity: Identity = Depends(get_identity),
    profiles: ProfileRegistry = Depends(get_profiles),
) -> ProfileEnvelope:
    """Change the wallet address used for purchases. The role cannot be edited."""
    profile = await profiles.update_wallet(identity, request.wallet_address)
    return ProfileEnvelope(profile=ProfileResponse.from_domain(profile))
