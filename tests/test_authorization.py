"""Tests for the role and ownership gate."""

import asyncio

import pytest

from factora.domain.errors import AuthenticationError, AuthorizationError
from factora.services.authorization import Action, AuthorizationGate
from factora.services.identity import Identity


def test_missing_identity_is_unauthenticated(store):
    gate = AuthorizationGate(store)
    with pytest.raises(AuthenticationError):
        asyncio.run(gate.authorize(None, Action.VIEW))


def test_unregistered_subject_is_rejected(store):
    gate = AuthorizationGate(store)
    with pytest.raises(AuthorizationError, match="Profile not found"):
        asyncio.run(gate.authorize(Identity(subject="ghost"), Action.VIEW))


@pytest.mark.parametrize("identity_fixture,action", [
    ("buyer", Action.CREATE),
    ("investor", Action.CREATE),
    ("msme", Action.ACKNOWLEDGE),
    ("investor", Action.LIST),
    ("msme", Action.BUY),
    ("buyer", Action.BUY),
    ("investor", Action.RECONCILE),
])
def test_capability_matrix_denials(store, request, identity_fixture, action):
    gate = AuthorizationGate(store)
    identity = request.getfixturevalue(identity_fixture)
    with pytest.raises(AuthorizationError):
        asyncio.run(gate.authorize(identity, action))


def test_asserted_role_is_ignored(store, buyer):
    """A buyer claiming to be an MSME is still a buyer."""
    gate = AuthorizationGate(store)
    spoofed = Identity(subject=buyer.subject, email=buyer.email, claimed_role="msme")
    with pytest.raises(AuthorizationError):
        asyncio.run(gate.authorize(spoofed, Action.CREATE))


def test_role_comes_from_stored_profile(store, msme):
    gate = AuthorizationGate(store)
    actor = asyncio.run(gate.authorize(Identity(subject=msme.subject, claimed_role="investor"), Action.CREATE))
    assert actor.profile.role.value == "msme"
    assert actor.actor_id == msme.subject


def test_system_capabilities(store, system):
    gate = AuthorizationGate(store)
    actor = asyncio.run(gate.authorize(system, Action.RECONCILE))
    assert actor.is_system
    assert actor.profile is None
    for action in (Action.CREATE, Action.LIST, Action.BUY, Action.ACKNOWLEDGE):
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(system, action))


class TestOwnership:

    def test_only_owner_can_list(self, store, make_invoice, msme, other_msme):
        invoice = make_invoice("Acknowledged")
        gate = AuthorizationGate(store)
        asyncio.run(gate.authorize(msme, Action.LIST, invoice))
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(other_msme, Action.LIST, invoice))

    def test_acknowledge_matches_email_case_insensitively(self, store, make_invoice, buyer, other_buyer):
        invoice = make_invoice(buyer_email="AP@Buyer.Example")
        gate = AuthorizationGate(store)
        asyncio.run(gate.authorize(buyer, Action.ACKNOWLEDGE, invoice))
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(other_buyer, Action.ACKNOWLEDGE, invoice))

    def test_investors_see_only_listed_invoices(self, store, make_invoice, investor):
        gate = AuthorizationGate(store)
        pending = make_invoice()
        listed = make_invoice("Listed")
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(investor, Action.VIEW, pending))
        asyncio.run(gate.authorize(investor, Action.VIEW, listed))

    def test_other_msme_cannot_view(self, store, make_invoice, other_msme, other_buyer):
        invoice = make_invoice()
        gate = AuthorizationGate(store)
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(other_msme, Action.VIEW, invoice))
        with pytest.raises(AuthorizationError):
            asyncio.run(gate.authorize(other_buyer, Action.VIEW, invoice))
