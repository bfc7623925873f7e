"""
Authenticated encryption for sensitive session fields.

AES-256-GCM with a key derived once per service instance via PBKDF2-HMAC-SHA256.
The salt is a fixed application value (ENCRYPTION_KDF_SALT) so the same passphrase
always yields the same key and previously written sessions stay readable.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import re
import secrets
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from . import config
from util.logging import logger

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

DEV_ENCRYPTION_KEY = "formation-dev-only-key-do-not-use-in-production"

SSN_PATTERN = re.compile(r"^\d{3}-?\d{2}-?\d{4}$")


class EncryptionError(Exception):
    """Base exception for encryption operations."""
    pass


class DecryptionError(EncryptionError):
    """Raised when an envelope cannot be authenticated or decoded."""
    pass


class InvalidFormatError(EncryptionError):
    """Raised when input does not match the format required before encryption."""
    pass


class EncryptionConfigError(EncryptionError):
    """Raised when no encryption secret is configured."""
    pass


@dataclass(frozen=True)
class EncryptionEnvelope:
    """Base64 ciphertext, IV and GCM authentication tag."""
    cipher_text: str
    iv: str
    auth_tag: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'EncryptionEnvelope':
        try:
            return cls(
                cipher_text=data["cipher_text"],
                iv=data["iv"],
                auth_tag=data["auth_tag"],
            )
        except (KeyError, TypeError) as e:
            raise DecryptionError(f"Malformed encryption envelope: {e}") from e

    @staticmethod
    def is_envelope(value: Any) -> bool:
        """True when value looks like a serialized envelope."""
        return isinstance(value, dict) and {"cipher_text", "iv", "auth_tag"} <= set(value)


def derive_key(passphrase: str, salt: Union[str, bytes] = None, iterations: int = None) -> bytes:
    """Derive a 256-bit key from a passphrase using PBKDF2."""
    if salt is None:
        salt = config.ENCRYPTION_KDF_SALT
    if isinstance(salt, str):
        salt = salt.encode("utf-8")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations or config.ENCRYPTION_KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _resolve_passphrase(passphrase: Optional[str], allow_dev_key: Optional[bool]) -> str:
    if passphrase:
        return passphrase
    if config.FORMATION_ENCRYPTION_KEY:
        return config.FORMATION_ENCRYPTION_KEY

    if allow_dev_key is None:
        allow_dev_key = config.ALLOW_DEV_ENCRYPTION_KEY
    if not allow_dev_key:
        raise EncryptionConfigError(
            "FORMATION_ENCRYPTION_KEY is not set; refusing to encrypt session data with a default key"
        )

    logger.warning(
        "FORMATION_ENCRYPTION_KEY not set - using development encryption key. "
        "Sessions written now are not protected."
    )
    return DEV_ENCRYPTION_KEY


class EncryptionService:
    """Encrypts strings, JSON objects, SSNs and payment info; creates HMAC checksums."""

    def __init__(self, passphrase: str = None, salt: Union[str, bytes] = None,
                 iterations: int = None, allow_dev_key: bool = None):
        self._key = derive_key(_resolve_passphrase(passphrase, allow_dev_key), salt, iterations)

    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        """Encrypt a string with a fresh random IV."""
        iv = os.urandom(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv)).encryptor()
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()

        return EncryptionEnvelope(
            cipher_text=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            auth_tag=base64.b64encode(encryptor.tag).decode("ascii"),
        )

    def decrypt(self, envelope: Union[EncryptionEnvelope, Mapping[str, Any]]) -> str:
        """
        Decrypt an envelope.

        Raises:
            DecryptionError: tag verification failed, or IV/tag/ciphertext are malformed
        """
        if not isinstance(envelope, EncryptionEnvelope):
            envelope = EncryptionEnvelope.from_dict(envelope)

        try:
            ciphertext = base64.b64decode(envelope.cipher_text, validate=True)
            iv = base64.b64decode(envelope.iv, validate=True)
            tag = base64.b64decode(envelope.auth_tag, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError(f"Envelope is not valid base64: {e}") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError("Envelope IV or authentication tag has the wrong length")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv, tag)).decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            raise DecryptionError("Authentication failed: data corrupted or wrong key") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e

    def encrypt_object(self, obj: Any) -> EncryptionEnvelope:
        return self.encrypt(json.dumps(obj))

    def decrypt_object(self, envelope: Union[EncryptionEnvelope, Mapping[str, Any]]) -> Any:
        plaintext = self.decrypt(envelope)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError(f"Decrypted payload is not JSON: {e}") from e

    def encrypt_ssn(self, ssn: str) -> EncryptionEnvelope:
        """Validate, strip dashes and encrypt an SSN."""
        if not isinstance(ssn, str) or not SSN_PATTERN.match(ssn):
            raise InvalidFormatError("Invalid SSN format (expected 9 digits, optional dashes)")
        return self.encrypt(ssn.replace("-", ""))

    def encrypt_payment_info(self, payment_info: Mapping[str, Any]) -> EncryptionEnvelope:
        """
        Mask the card number and drop the CVV before encrypting.

        The card number becomes '****' + last four digits, with the last four also
        stored under 'last_four'. The caller's mapping is left untouched.
        """
        masked = dict(payment_info)
        card_number = masked.get("card_number")
        if card_number:
            digits = re.sub(r"[\s-]", "", str(card_number))
            masked["last_four"] = digits[-4:]
            masked["card_number"] = f"****{digits[-4:]}"
        masked.pop("cvv", None)

        return self.encrypt_object(masked)

    def create_checksum(self, data: Union[str, bytes]) -> str:
        """HMAC-SHA256 of data keyed by the derived key, base64 encoded."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        digest = hmac.new(self._key, data, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_checksum(self, data: Union[str, bytes], checksum: str) -> bool:
        """Constant-time checksum comparison; never raises."""
        if not isinstance(checksum, str):
            return False
        try:
            expected = self.create_checksum(data)
        except (TypeError, AttributeError):
            return False
        return hmac.compare_digest(expected.encode("utf-8"), checksum.encode("utf-8"))

    @staticmethod
    def hash(data: str) -> str:
        """One-way SHA-256 hex digest."""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_token(length: int = 32) -> str:
        """Random hex token of `length` bytes."""
        return secrets.token_hex(length)
