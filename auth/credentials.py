"""
auth/credentials.py -- Credential Store Adapter: validate, hash, verify.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor is
       configurable (BCRYPT_ROUNDS, default 12) so hashing stays in the
       150-250 ms range as hardware gets faster.

  bcrypt only looks at the first 72 bytes of input. Longer passwords are
       rejected at validation time rather than silently truncated.

  Timing equalization [C1]: verify() always runs bcrypt, against _DUMMY_HASH
       when the email is unknown, so response time does not reveal whether an
       account exists. Unknown email and wrong password raise the same
       InvalidCredentials.

  Uniqueness [R1]: register() inserts and catches the store's IntegrityError.
       There is no "does this email exist?" pre-check to race against.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import AccountDisabled, DuplicateIdentity, InvalidCredentials, ValidationFailure
from auth.models import Identity, Profile
from auth.permissions import ADMINISTRATOR, ROLES, is_known_role

if TYPE_CHECKING:
    from auth.store import IdentityStore

logger = logging.getLogger("caregate.auth")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_EMAIL_MAX_LENGTH = 255
_PASSWORD_MIN_LENGTH = 8
_PASSWORD_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized email or raise ValidationFailure."""
    normalized = normalize_email(email)
    if len(normalized) > _EMAIL_MAX_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationFailure("Invalid email format", details={"field": "email"})
    return normalized


def validate_password_strength(password: str) -> None:
    """Raise ValidationFailure listing every rule the password breaks.

    Policy: 8 to 72 bytes, at least one upper-case letter, one lower-case
    letter and one digit.
    """
    problems = []
    if len(password) < _PASSWORD_MIN_LENGTH:
        problems.append(f"must be at least {_PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > _PASSWORD_MAX_BYTES:
        problems.append(f"must be at most {_PASSWORD_MAX_BYTES} bytes")
    if not any(c.isupper() for c in password):
        problems.append("must contain an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("must contain a digit")
    if problems:
        raise ValidationFailure(
            "Password does not meet strength requirements",
            details={"field": "password", "requirements": problems},
        )


def validate_profile(profile: Profile) -> None:
    if not is_known_role(profile.role):
        raise ValidationFailure(
            f"Role must be one of: {', '.join(ROLES)}",
            details={"field": "role", "allowed": list(ROLES)},
        )
    # Every non-administrator works inside exactly one zone.
    if profile.role != ADMINISTRATOR and not profile.zone_id:
        raise ValidationFailure("zone_id is required for this role", details={"field": "zone_id"})


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt raises ValueError on malformed hashes and on over-long input;
    both simply mean "does not match".
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CredentialStore:
    """Registers identities and verifies email/password pairs.

    Usage:
        credentials = CredentialStore(IdentityStore(engine), bcrypt_rounds=12)
        identity = credentials.register("nurse@example.com", "Secure123", Profile("Ada", "Ng", zone_id="z1"))
        credentials.verify("Nurse@Example.com", "Secure123")
    """

    def __init__(self, identities: IdentityStore, bcrypt_rounds: int = 12) -> None:
        self.identities = identities
        self.bcrypt_rounds = bcrypt_rounds
        # Timing equalization dummy hash [C1], computed at the same cost as
        # real hashes so the unknown-email path takes the same time.
        self._dummy_hash = hash_password("caregate_timing_dummy", rounds=bcrypt_rounds)

    def register(self, email: str, password: str, profile: Profile) -> Identity:
        """Validate, hash and persist a new identity.

        Raises ValidationFailure for malformed input and DuplicateIdentity if
        the normalized email is taken.
        """
        normalized = validate_email(email)
        validate_password_strength(password)
        validate_profile(profile)
        identity = Identity(
            email=normalized,
            role=profile.role,
            password_hash=hash_password(password, rounds=self.bcrypt_rounds),
            zone_id=profile.zone_id,
            first_name=profile.first_name.strip(),
            last_name=profile.last_name.strip(),
            permission_overrides=frozenset(profile.permission_overrides),
        )
        try:
            created = self.identities.create(identity)
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc
        logger.info("Identity registered: id=%s role=%s zone=%s", created.id, created.role, created.zone_id)
        return created

    def verify(self, email: str, password: str) -> Identity:
        """Return the identity for a correct email/password pair.

        Raises InvalidCredentials for an unknown email or a wrong password,
        and AccountDisabled when the password is right but the account is off.
        """
        identity = self.identities.get_by_email(normalize_email(email))
        if identity is None or not identity.password_hash:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, self._dummy_hash)
            raise InvalidCredentials()
        if not verify_password(password, identity.password_hash):
            raise InvalidCredentials()
        if not identity.is_active:
            raise AccountDisabled()
        return identity
