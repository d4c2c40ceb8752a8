from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionauth.config import Settings
from sessionauth.logging import email_fingerprint, get_logger
from sessionauth.service.validation import normalize_email
from sessionauth.storage.models import User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...


class CredentialOutcome(str, Enum):
    OK = "ok"
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"


@dataclass
class CredentialCheck:
    outcome: CredentialOutcome
    user: Optional[User] = None

    @property
    def ok(self) -> bool:
        return self.outcome is CredentialOutcome.OK


class CredentialVerifier:
    """Checks email/password pairs against argon2id hashes.

    Unknown accounts still pay for one hash verification so response time
    does not reveal whether an address is registered.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._pwd_hasher.hash("timing-equalizer")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            logger.warning("password_verification_error")
            return False

    def check_password(self, user_id: str, password: str) -> bool:
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            logger.warning("password_record_missing", user_id=user_id)
            self._matches(self._dummy_hash, password)
            return False
        return self._matches(stored_hash, password)

    def verify(self, email: str, password: str) -> CredentialCheck:
        user = self.store.get_user_by_email(normalize_email(email or ""))
        if not user:
            self._matches(self._dummy_hash, password or "")
            logger.info("credential_check_unknown_user", email_hash=email_fingerprint(email or ""))
            return CredentialCheck(CredentialOutcome.INVALID_CREDENTIALS)
        if not self.check_password(user.id, password or ""):
            return CredentialCheck(CredentialOutcome.INVALID_CREDENTIALS)
        if not user.email_verified:
            return CredentialCheck(CredentialOutcome.EMAIL_NOT_VERIFIED, user)
        return CredentialCheck(CredentialOutcome.OK, user)
