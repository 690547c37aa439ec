from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.logging import get_logger

logger = get_logger(__name__)


class InvalidCredentialFormat(ValueError):
    """The stored credential is not a parseable argon2 hash."""


class CredentialHasher:
    """Salted argon2id hashing for passwords and refresh tokens.

    The encoded output carries its own salt and cost parameters, so two calls
    with the same plaintext never produce the same credential and verification
    needs nothing but the stored string.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, credential: Optional[str]) -> bool:
        """Return True on match, False on mismatch.

        Raises InvalidCredentialFormat when ``credential`` cannot be parsed;
        callers decide how that surfaces.
        """
        if not credential:
            raise InvalidCredentialFormat("credential is empty")
        try:
            return self._hasher.verify(credential, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            # argon2 reports undecodable parameters as a generic VerificationError
            raise InvalidCredentialFormat("credential is not an argon2 hash") from exc

    def needs_rehash(self, credential: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(credential)
        except InvalidHash:
            logger.warning("credential_rehash_check_failed")
            return False
