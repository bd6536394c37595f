"""Unit tests for auth/service.py -- the flows route handlers call.

Covers:
- register / login issue a token pair bound to the device
- authenticate builds an AuthContext and honours the denylist
- logout denies the access token and drops the device session
- logout_everywhere and administrative deactivation end every session
"""

import pytest

from auth.errors import (
    AccountDisabled,
    IdentityNotFound,
    InvalidCredentials,
    SessionExpired,
    TokenRevoked,
    ValidationFailure,
)
from auth.models import Profile
from auth.permissions import ADMINISTRATOR, COORDINATOR


def _register(auth_service, email="nurse@example.com", device_id="phone", **profile):
    fields = {"first_name": "Nia", "last_name": "Reyes", "zone_id": "z1"}
    fields.update(profile)
    return auth_service.register(email, "Secure123", Profile(**fields), device_id=device_id)


class TestRegisterAndLogin:
    def test_register_returns_identity_and_pair(self, auth_service) -> None:
        result = _register(auth_service)
        assert result.identity.email == "nurse@example.com"
        context = auth_service.authenticate(result.tokens.access.token)
        assert context.identity_id == result.identity.id
        assert context.device_id == "phone"
        assert context.zone_id == "z1"

    def test_login_issues_new_pair(self, auth_service) -> None:
        registered = _register(auth_service)
        result = auth_service.login("NURSE@example.com", "Secure123", "laptop")
        assert result.identity.id == registered.identity.id
        assert {s.device_id for s in auth_service.registry.list_sessions(registered.identity.id)} == {
            "phone",
            "laptop",
        }

    def test_login_wrong_password(self, auth_service) -> None:
        _register(auth_service)
        with pytest.raises(InvalidCredentials):
            auth_service.login("nurse@example.com", "Secure124", "phone")

    def test_login_disabled(self, auth_service) -> None:
        registered = _register(auth_service)
        auth_service.identities.update(registered.identity.id, is_active=False)
        with pytest.raises(AccountDisabled):
            auth_service.login("nurse@example.com", "Secure123", "phone")


class TestAuthenticate:
    def test_context_carries_effective_permissions(self, auth_service) -> None:
        result = _register(auth_service, permission_overrides=frozenset({"create:client"}))
        context = auth_service.authenticate(result.tokens.access.token)
        assert "create:client" in context.permissions
        assert "read:clients" in context.permissions
        assert context.expires_at == result.tokens.access.expires_at

    def test_denied_token_is_revoked(self, auth_service) -> None:
        result = _register(auth_service)
        auth_service.ledger.denylist(result.tokens.access.token_id, result.tokens.access.expires_at)
        with pytest.raises(TokenRevoked):
            auth_service.authenticate(result.tokens.access.token)


class TestLogout:
    def test_logout_denies_token_and_drops_session(self, auth_service) -> None:
        result = _register(auth_service)
        context = auth_service.authenticate(result.tokens.access.token)
        auth_service.logout(context)

        with pytest.raises(TokenRevoked):
            auth_service.authenticate(result.tokens.access.token)
        with pytest.raises(SessionExpired):
            auth_service.refresh(result.tokens.refresh.token)

    def test_logout_other_device(self, auth_service) -> None:
        result = _register(auth_service)
        laptop = auth_service.login("nurse@example.com", "Secure123", "laptop")
        context = auth_service.authenticate(result.tokens.access.token)
        auth_service.logout(context, device_id="laptop")

        with pytest.raises(SessionExpired):
            auth_service.refresh(laptop.tokens.refresh.token)
        with pytest.raises(TokenRevoked):
            auth_service.authenticate(laptop.tokens.access.token)
        # The phone keeps its refresh record.
        auth_service.refresh(result.tokens.refresh.token)

    def test_logout_everywhere(self, auth_service) -> None:
        result = _register(auth_service)
        laptop = auth_service.login("nurse@example.com", "Secure123", "laptop")
        context = auth_service.authenticate(result.tokens.access.token)

        assert auth_service.logout_everywhere(context) == 2
        with pytest.raises(TokenRevoked):
            auth_service.authenticate(laptop.tokens.access.token)
        with pytest.raises(TokenRevoked):
            auth_service.authenticate(result.tokens.access.token)


class TestUpdateIdentity:
    def test_change_role_and_zone(self, auth_service) -> None:
        result = _register(auth_service)
        updated = auth_service.update_identity(result.identity.id, role=COORDINATOR, zone_id="z2")
        assert updated.role == COORDINATOR
        assert updated.zone_id == "z2"

    def test_role_change_applies_on_next_token(self, auth_service) -> None:
        result = _register(auth_service)
        auth_service.update_identity(result.identity.id, role=COORDINATOR)
        pair = auth_service.refresh(result.tokens.refresh.token)
        assert auth_service.authenticate(pair.access.token).role == COORDINATOR

    def test_clearing_zone_of_member_rejected(self, auth_service) -> None:
        result = _register(auth_service)
        with pytest.raises(ValidationFailure):
            auth_service.update_identity(result.identity.id, zone_id=None)

    def test_administrator_may_have_no_zone(self, auth_service) -> None:
        result = _register(auth_service)
        updated = auth_service.update_identity(result.identity.id, role=ADMINISTRATOR, zone_id=None)
        assert updated.zone_id is None

    def test_deactivation_revokes_sessions(self, auth_service) -> None:
        result = _register(auth_service)
        auth_service.update_identity(result.identity.id, is_active=False)
        with pytest.raises(TokenRevoked):
            auth_service.authenticate(result.tokens.access.token)
        assert auth_service.registry.list_sessions(result.identity.id) == []

    def test_unknown_identity(self, auth_service) -> None:
        with pytest.raises(IdentityNotFound):
            auth_service.update_identity("missing", role=COORDINATOR)
