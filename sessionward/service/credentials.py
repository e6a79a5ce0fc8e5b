from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionward.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier(Protocol):
    def verify(self, identifier: str, secret: str) -> bool: ...


class PasswordRecordStore(Protocol):
    def get_password_record(self, identifier: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, identifier: str, password_hash: str, password_algo: str
    ) -> None: ...


class Argon2CredentialVerifier:
    """Checks secrets against argon2id hashes kept by the principal store."""

    def __init__(self, store: PasswordRecordStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Dummy hash so unknown identifiers cost the same as a wrong password
        self._dummy_hash = self._pwd_hasher.hash("sessionward-timing-guard")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, identifier: str, password: str) -> None:
        """Hash and save a new password for a principal."""
        digest, algo = self.hash_password(password)
        self.store.save_password(identifier, digest, algo)

    def verify(self, identifier: str, secret: str) -> bool:
        record = self.store.get_password_record(identifier)
        if not record:
            try:
                self._pwd_hasher.verify(self._dummy_hash, secret or "")
            except VerificationError:
                pass
            logger.info("password_record_missing")
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            verified = self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerificationError):
            logger.info("password_verification_failed")
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            digest, algo = self.hash_password(secret)
            self.store.save_password(identifier, digest, algo)
        return verified
