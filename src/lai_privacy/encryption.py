"""
Encryption primitives for search and chat data

Provides a passphrase-derived master key and authenticated encryption of
sensitive strings and JSON-serializable objects:
- Master key derivation (PBKDF2-HMAC-SHA256, static application salt)
- Per-call key derivation from the master key and a fresh random salt
- AES-256-GCM with the authentication tag appended to the ciphertext
- SHA-256 hashing for cache keys (not for confidentiality)

Envelopes produced here are persisted by the host application, so the
derivation parameters and the envelope layout must stay stable.
"""

import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .logging import get_logger

logger = get_logger()


ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32          # 256 bits
IV_LENGTH = 16           # 128 bits
SALT_LENGTH = 16
AUTH_TAG_LENGTH = 16     # GCM tag appended to the ciphertext
PBKDF2_ITERATIONS = 100000

# Static salt so the same password always yields the same master key
MASTER_KEY_SALT = b"lai-encryption-salt"


class PrivacyError(Exception):
    """Base exception for privacy-related errors"""
    pass


class EncryptionError(PrivacyError):
    """Raised when encryption/decryption fails"""
    pass


class NotInitializedError(EncryptionError):
    """Raised when a crypto operation runs without a master key"""

    def __init__(self, message: str = "Encryption service not initialized"):
        super().__init__(message)


class DecryptionError(EncryptionError):
    """Raised on tag mismatch, wrong key, or a malformed envelope"""
    pass


class SerializationError(EncryptionError):
    """Raised when an object cannot be converted to or from JSON"""
    pass


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    Self-describing encrypted payload.

    All binary fields are lowercase hex. ``encrypted`` holds the ciphertext
    followed by the authentication tag.
    """
    encrypted: str
    iv: str
    salt: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, str]:
        """Serialize to the persisted envelope shape."""
        return {
            "encrypted": self.encrypted,
            "iv": self.iv,
            "salt": self.salt,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        """Deserialize from dictionary."""
        try:
            return cls(
                encrypted=data["encrypted"],
                iv=data["iv"],
                salt=data["salt"],
                algorithm=data.get("algorithm", ALGORITHM),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise DecryptionError(f"Malformed envelope: {e}")

    @staticmethod
    def is_envelope(value: Any) -> bool:
        """Check whether a value is an envelope or its dict form."""
        if isinstance(value, EncryptedEnvelope):
            return True
        return isinstance(value, dict) and {"encrypted", "iv", "salt"} <= value.keys()


def derive_key(secret: bytes, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Stretch a secret into a 256-bit key.

    Args:
        secret: Password bytes or master key bytes
        salt: Derivation salt
        iterations: PBKDF2 iteration count

    Returns:
        KEY_LENGTH bytes of key material
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


class EncryptionService:
    """
    Holds one master key and encrypts/decrypts data with it.

    Not thread-safe: callers that reconfigure the key while other threads
    encrypt or decrypt must serialize those calls.
    """

    def __init__(self):
        self._master_key: Optional[bytearray] = None

    def initialize(self, password: str) -> None:
        """Derive the master key from a password."""
        key = derive_key(password.encode("utf-8"), MASTER_KEY_SALT)
        self._replace_key(bytearray(key))
        logger.debug("Encryption master key derived")

    def is_initialized(self) -> bool:
        """Check if a master key is held."""
        return self._master_key is not None

    def set_master_key(self, key_hex: str) -> None:
        """
        Restore a master key exported with get_master_key().

        Raises:
            EncryptionError: If the value is not KEY_LENGTH bytes of hex
        """
        try:
            key = bytes.fromhex(key_hex)
        except (ValueError, TypeError):
            raise EncryptionError("Master key must be a hex string")
        if len(key) != KEY_LENGTH:
            raise EncryptionError(
                f"Master key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._replace_key(bytearray(key))

    def get_master_key(self) -> str:
        """Export the master key as hex (for backup)."""
        return bytes(self._require_key()).hex()

    def encrypt(self, data: str) -> EncryptedEnvelope:
        """
        Encrypt a string.

        Args:
            data: Plaintext to encrypt

        Returns:
            EncryptedEnvelope with fresh iv and salt

        Raises:
            NotInitializedError: If no master key is held
        """
        master_key = self._require_key()

        iv = os.urandom(IV_LENGTH)
        salt = os.urandom(SALT_LENGTH)
        derived_key = derive_key(bytes(master_key), salt)

        encryptor = Cipher(algorithms.AES(derived_key), modes.GCM(iv)).encryptor()
        ciphertext = encryptor.update(data.encode("utf-8")) + encryptor.finalize()

        return EncryptedEnvelope(
            encrypted=(ciphertext + encryptor.tag).hex(),
            iv=iv.hex(),
            salt=salt.hex(),
            algorithm=ALGORITHM,
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            NotInitializedError: If no master key is held
            DecryptionError: If the tag does not verify or the envelope is malformed
        """
        master_key = self._require_key()

        if isinstance(envelope, dict):
            envelope = EncryptedEnvelope.from_dict(envelope)
        elif not isinstance(envelope, EncryptedEnvelope):
            raise DecryptionError(f"Malformed envelope: expected an envelope, got {type(envelope).__name__}")
        if envelope.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported algorithm: {envelope.algorithm}")

        try:
            iv = bytes.fromhex(envelope.iv)
            salt = bytes.fromhex(envelope.salt)
            combined = bytes.fromhex(envelope.encrypted)
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Decryption failed: invalid hex encoding ({e})")

        if len(combined) < AUTH_TAG_LENGTH:
            raise DecryptionError("Decryption failed: payload shorter than auth tag")
        ciphertext = combined[:-AUTH_TAG_LENGTH]
        tag = combined[-AUTH_TAG_LENGTH:]

        derived_key = derive_key(bytes(master_key), salt)
        try:
            decryptor = Cipher(
                algorithms.AES(derived_key),
                modes.GCM(iv, tag, min_tag_length=AUTH_TAG_LENGTH),
            ).decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
            return plaintext.decode("utf-8")
        except InvalidTag:
            raise DecryptionError("Decryption failed: invalid key or corrupted data")
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Decryption failed: {e}")

    def encrypt_object(self, obj: Any) -> EncryptedEnvelope:
        """Encrypt a JSON-serializable value."""
        try:
            json_str = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Value is not JSON serializable: {e}")
        return self.encrypt(json_str)

    def decrypt_object(self, envelope: EncryptedEnvelope) -> Any:
        """Decrypt to the original JSON value."""
        json_str = self.decrypt(envelope)
        try:
            return json.loads(json_str)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Decrypted payload is not valid JSON: {e}")

    def hash(self, data: str) -> str:
        """Hash a value (for deduplication, not encryption)."""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def clear(self) -> None:
        """Zero the master key and drop it."""
        if self._master_key is not None:
            for i in range(len(self._master_key)):
                self._master_key[i] = 0
            self._master_key = None
            logger.debug("Encryption master key cleared")

    def _replace_key(self, key: bytearray) -> None:
        self.clear()
        self._master_key = key

    def _require_key(self) -> bytearray:
        if self._master_key is None:
            raise NotInitializedError()
        return self._master_key
