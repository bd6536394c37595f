"""Unit tests for the Credential Store Adapter in auth/credentials.py.

Covers:
- Password round-trip: verify succeeds right after register, fails otherwise
- Case-insensitive email uniqueness backed by the database index
- Email / password / role / zone validation
- Unknown email and wrong password are indistinguishable
- Disabled accounts cannot log in
"""

import pytest

from auth.credentials import (
    hash_password,
    normalize_email,
    validate_email,
    validate_password_strength,
    verify_password,
)
from auth.errors import AccountDisabled, DuplicateIdentity, InvalidCredentials, ValidationFailure
from auth.models import Profile
from auth.permissions import ADMINISTRATOR, COORDINATOR


def _profile(**overrides) -> Profile:
    fields = {"first_name": "Sam", "last_name": "Lee", "zone_id": "z1"}
    fields.update(overrides)
    return Profile(**fields)


class TestPasswordHashing:
    def test_hash_is_not_plaintext_and_verifies(self) -> None:
        hashed = hash_password("Secure123", rounds=4)
        assert hashed != "Secure123"
        assert hashed.startswith("$2")
        assert verify_password("Secure123", hashed)

    def test_wrong_password_does_not_verify(self) -> None:
        hashed = hash_password("Secure123", rounds=4)
        assert not verify_password("secure123", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        """A corrupt stored hash must read as 'no match', not crash the login."""
        assert not verify_password("Secure123", "not-a-bcrypt-hash")


class TestValidation:
    def test_email_is_trimmed_and_lowercased(self) -> None:
        assert normalize_email("  Nurse@Example.COM ") == "nurse@example.com"
        assert validate_email(" Nurse@Example.COM") == "nurse@example.com"

    @pytest.mark.parametrize("email", ["plainaddress", "a@b", "a b@example.com", "@example.com", ""])
    def test_malformed_email_rejected(self, email: str) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            validate_email(email)
        assert exc_info.value.details["field"] == "email"

    @pytest.mark.parametrize(
        "password, broken_rule",
        [
            ("Short1", "at least 8"),
            ("alllowercase1", "uppercase"),
            ("ALLUPPERCASE1", "lowercase"),
            ("NoDigitsHere", "digit"),
            ("Aa1" + "x" * 70, "72 bytes"),
        ],
    )
    def test_weak_password_rejected(self, password: str, broken_rule: str) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            validate_password_strength(password)
        requirements = exc_info.value.details["requirements"]
        assert any(broken_rule in r for r in requirements), f"{broken_rule!r} not in {requirements}"

    def test_strong_password_accepted(self) -> None:
        validate_password_strength("Secure123")


class TestRegister:
    def test_register_then_verify_round_trip(self, credentials) -> None:
        """verify succeeds immediately after register and fails for any other password."""
        identity = credentials.register("nurse@example.com", "Secure123", _profile())
        assert identity.id
        assert identity.password_hash != "Secure123"

        verified = credentials.verify("nurse@example.com", "Secure123")
        assert verified.id == identity.id
        with pytest.raises(InvalidCredentials):
            credentials.verify("nurse@example.com", "Secure124")

    def test_email_stored_normalized(self, credentials, identity_store) -> None:
        credentials.register("  Nurse@Example.com ", "Secure123", _profile())
        assert identity_store.get_by_email("nurse@example.com").email == "nurse@example.com"

    def test_duplicate_email_any_case(self, credentials) -> None:
        """a@x.com followed by A@X.COM must fail with DuplicateIdentity."""
        credentials.register("a@x.com", "Secure123", _profile())
        with pytest.raises(DuplicateIdentity) as exc_info:
            credentials.register("A@X.COM", "Secure123", _profile())
        assert exc_info.value.status_code == 409

    def test_login_is_case_insensitive(self, credentials) -> None:
        credentials.register("a@x.com", "Secure123", _profile())
        assert credentials.verify("A@X.com", "Secure123").email == "a@x.com"

    def test_unknown_role_rejected(self, credentials) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            credentials.register("a@x.com", "Secure123", _profile(role="superuser"))
        assert exc_info.value.details["field"] == "role"

    def test_zone_required_for_non_administrators(self, credentials) -> None:
        with pytest.raises(ValidationFailure):
            credentials.register("c@x.com", "Secure123", _profile(role=COORDINATOR, zone_id=None))

    def test_administrator_needs_no_zone(self, credentials) -> None:
        identity = credentials.register("root@x.com", "Secure123", _profile(role=ADMINISTRATOR, zone_id=None))
        assert identity.zone_id is None

    def test_permission_overrides_persisted(self, credentials, identity_store) -> None:
        identity = credentials.register(
            "o@x.com", "Secure123", _profile(permission_overrides=frozenset({"create:client"}))
        )
        assert identity_store.get_by_id(identity.id).permission_overrides == frozenset({"create:client"})


class TestVerify:
    def test_unknown_email_same_error_as_wrong_password(self, credentials) -> None:
        credentials.register("nurse@example.com", "Secure123", _profile())
        with pytest.raises(InvalidCredentials) as unknown:
            credentials.verify("ghost@example.com", "Secure123")
        with pytest.raises(InvalidCredentials) as wrong:
            credentials.verify("nurse@example.com", "Wrong1234")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message

    def test_disabled_account_rejected(self, credentials, identity_store) -> None:
        identity = credentials.register("nurse@example.com", "Secure123", _profile())
        identity_store.update(identity.id, is_active=False)
        with pytest.raises(AccountDisabled):
            credentials.verify("nurse@example.com", "Secure123")

    def test_disabled_account_with_wrong_password_is_invalid_credentials(self, credentials, identity_store) -> None:
        """The disabled state is only revealed to someone who knows the password."""
        identity = credentials.register("nurse@example.com", "Secure123", _profile())
        identity_store.update(identity.id, is_active=False)
        with pytest.raises(InvalidCredentials):
            credentials.verify("nurse@example.com", "Wrong1234")
