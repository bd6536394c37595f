"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CareGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. jwt_private_key -> JWT_PRIVATE_KEY).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Dev mode generates an RSA key pair with a warning; production
      refuses to start without one.

Security notes:
  [K1] Tokens are signed with RS256. Only the private key can mint; any
       service holding the public key can verify.

  [K2] Keys may be supplied as raw PEM or as "base64:<base64 of PEM>" so they
       survive single-line env files and container secret stores.

  [K3] Access tokens are short-lived: 15 to 60 minutes. Anything outside
       that window is a startup failure, not a silent clamp.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import base64
import logging
from functools import lru_cache

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("caregate.config")

_BASE64_PREFIX = "base64:"


def decode_pem(value: str) -> str:
    """Return a PEM string, unwrapping the "base64:" transport encoding [K2]."""
    value = value.strip()
    if value.startswith(_BASE64_PREFIX):
        return base64.b64decode(value[len(_BASE64_PREFIX) :]).decode("utf-8")
    # Single-line env files often carry literal "\n" sequences.
    return value.replace("\\n", "\n")


def generate_rsa_keypair(key_size: int = 2048) -> tuple[str, str]:
    """Generate an RSA key pair and return (private_pem, public_pem)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return private_pem, public_pem


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:8000", "http://127.0.0.1:8000"]

    # ------------------------------------------------------------------
    # Token signing [K1]
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key pair or raises.
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    jwt_issuer: str = "caregate-api"
    jwt_audience: str = "caregate-app"
    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    # Cost 12 is roughly 150-250 ms per hash on current server hardware.
    bcrypt_rounds: int = 12
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Empty means the SQLite file beside the owning package.
    database_url: str = ""
    # "redis://host:6379/0" or a SQLite path (":memory:" allowed).
    revocation_store_url: str = ""
    store_timeout_seconds: float = 2.0
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_storage_uri: str = "memory://"
    register_rate_limit: str = "5/hour"
    login_rate_limit: str = "10/15 minutes"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the key pair policy.

        Dev mode (DEBUG=true): generate a throwaway RSA pair with a warning.
            Every token becomes invalid on restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing. A half
            configured pair would mint tokens nobody can verify.
        """
        if not self.jwt_private_key or not self.jwt_public_key:
            if self.jwt_private_key or self.jwt_public_key:
                raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be configured together.")
            if self.debug:
                self.jwt_private_key, self.jwt_public_key = generate_rsa_keypair()
                logger.warning(
                    "WARNING: Using an auto-generated RSA key pair. " "Issued tokens will not survive restarts."
                )
            else:
                raise ValueError(
                    "JWT_PRIVATE_KEY and JWT_PUBLIC_KEY are required in production mode. "
                    "Run `python main.py generate-keys` and set both in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        self.jwt_private_key = decode_pem(self.jwt_private_key)
        self.jwt_public_key = decode_pem(self.jwt_public_key)
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Reject token lifetimes and bcrypt costs outside the supported range [K3]."""
        if not 900 <= self.access_token_expire_seconds <= 3600:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be between 900 and 3600.")
        if self.refresh_token_expire_seconds <= self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must exceed the access token lifetime.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
