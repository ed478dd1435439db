"""
Per-member encryption for shared group data.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256) with a key
derived per (user, group) from the master key via HKDF-SHA256. A token
encrypted for one member of one group cannot be read as another.

Decryption fails closed: an integrity failure raises DecryptionFailure
and the ciphertext is never handed back as plaintext.
"""

import base64

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from cohortlens.config import settings
from cohortlens.exceptions import DecryptionFailure
from cohortlens.logging_config import short_id

logger = structlog.get_logger(__name__)

_KDF_SALT = b"cohortlens.group-share.v1"


class GroupCipher:
    """Encrypts and decrypts member payloads scoped to one group."""

    def __init__(self, master_key: str | bytes | None = None):
        key = master_key if master_key is not None else settings.master_key
        if not key:
            raise ValueError("COHORTLENS_MASTER_KEY is not configured")
        self._master = key.encode("utf-8") if isinstance(key, str) else key
        self._fernets: dict[tuple[str, str], Fernet] = {}

    def _fernet(self, user_id: str, group_id: str) -> Fernet:
        fernet = self._fernets.get((user_id, group_id))
        if fernet is None:
            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=32,
                salt=_KDF_SALT,
                info=f"user:{user_id}|group:{group_id}".encode("utf-8"),
            )
            fernet = Fernet(base64.urlsafe_b64encode(hkdf.derive(self._master)))
            self._fernets[(user_id, group_id)] = fernet
        return fernet

    def encrypt_for_user(self, plaintext: bytes | str, user_id: str, group_id: str) -> str:
        """Encrypt a payload for storage. Returns a URL-safe token."""
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        return self._fernet(str(user_id), str(group_id)).encrypt(data).decode("ascii")

    def decrypt_for_user(self, token: str | bytes, user_id: str, group_id: str) -> bytes:
        """Decrypt a payload. Raises DecryptionFailure on any integrity error."""
        try:
            raw = token.encode("ascii") if isinstance(token, str) else token
            return self._fernet(str(user_id), str(group_id)).decrypt(raw)
        except (InvalidToken, ValueError) as exc:
            logger.error(
                "decryption_failed",
                user_id=short_id(user_id),
                group_id=group_id,
                error_type=type(exc).__name__,
            )
            raise DecryptionFailure(str(user_id), str(group_id)) from exc
