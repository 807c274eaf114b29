"""Password verification and the session fields it controls.

Credentials are stored as hex-encoded salt and Argon2id output. The KDF
parameters below must match the ones used when the credential was
provisioned, otherwise every login fails.
"""

import hmac
import logging
import secrets
from typing import MutableMapping

from argon2.low_level import Type, hash_secret_raw

from .errors import (
    CredentialStoreCorrupt,
    IncorrectPassword,
    UserNotFound,
)
from .storage import UserStore

logger = logging.getLogger("hermes.auth")

ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST_KIB = 60 * 1024
ARGON2_PARALLELISM = 1
ARGON2_HASH_LENGTH = 32
SALT_LENGTH = 16
_DUMMY_SALT = bytes(SALT_LENGTH)

SESSION_AUTHENTICATED_KEY = "authenticated"
SESSION_USER_KEY = "user"


def hash_password(password: str, salt: bytes) -> bytes:
    """Derive the 32-byte Argon2id key for *password* and *salt*."""

    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST_KIB,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LENGTH,
        type=Type.ID,
    )


def new_credential(password: str) -> tuple[str, str]:
    """Return a fresh hex ``(salt, hash)`` pair for provisioning."""

    salt = secrets.token_bytes(SALT_LENGTH)
    return salt.hex(), hash_password(password, salt).hex()


class CredentialVerifier:
    def __init__(self, users: UserStore) -> None:
        self.users = users

    def verify(self, username: str, password: str) -> None:
        """Check *password* against the stored credential for *username*.

        Raises :class:`UserNotFound` or :class:`IncorrectPassword` on a bad
        login, and :class:`CredentialStoreCorrupt` when the stored values are
        not valid hex.
        """

        stored = self.users.get_credentials(username)
        if stored is None:
            # Unknown users cost one KDF run, like a wrong password.
            hash_password(password, _DUMMY_SALT)
            raise UserNotFound(f"user not found: {username!r}")
        salt_hex, hash_hex = stored

        try:
            salt = bytes.fromhex(salt_hex)
        except (ValueError, TypeError) as error:
            raise CredentialStoreCorrupt("decoding saved salt to bytes", error) from error
        try:
            saved_hash = bytes.fromhex(hash_hex)
        except (ValueError, TypeError) as error:
            raise CredentialStoreCorrupt(
                "decoding saved argon2id hash to bytes", error
            ) from error

        key = hash_password(password, salt)
        if not hmac.compare_digest(key, saved_hash):
            raise IncorrectPassword(f"incorrect password for user {username!r}")

    def login(self, session: MutableMapping, username: str, password: str) -> None:
        """Verify the credentials and mark *session* as authenticated.

        The session is only touched after verification succeeds.
        """

        self.verify(username, password)
        regenerate = getattr(session, "regenerate", None)
        if callable(regenerate):
            regenerate()
        session[SESSION_AUTHENTICATED_KEY] = True
        session[SESSION_USER_KEY] = username
        logger.info("user_logged_in username=%s", username)


def is_authenticated(session: MutableMapping) -> bool:
    return bool(session.get(SESSION_AUTHENTICATED_KEY))


def current_user(session: MutableMapping) -> str:
    if not is_authenticated(session):
        return ""
    return str(session.get(SESSION_USER_KEY) or "")
