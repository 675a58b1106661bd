"""
Vault Crypto Core — Key derivation, authenticated encryption and the
exported payload envelope.

Implements password-based encryption for vault payloads:
- Master key: Argon2id(password, salt) → 32-byte key
- Context key: HKDF(master key, context) → 32-byte sub-key (optional)
- Payload: AES-256-GCM(sub-key, random 96-bit IV) → ciphertext + 16B tag

Security Note:
    Never log passwords, keys, plaintext or ciphertext values.
    IVs are random 96-bit; a fresh IV is drawn for every encryption.
    Derived keys live in bytearrays that are zeroed after use. This is
    best effort only: the interpreter may keep copies we cannot reach.
"""
import os
import hmac
import base64
import hashlib
import logging
from typing import Optional

import orjson
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .exceptions import DecryptionFailed, InvalidKey, KeyDerivationFailed
from .models import ALGORITHM, FORMAT_VERSION, EncryptedPayload

logger = logging.getLogger("vaultstore")

NONCE_SIZE = 12  # 96-bit IV
TAG_SIZE = 16  # GCM tag
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16


# ---------------------------------------------------------------------------
# Sensitive buffers
# ---------------------------------------------------------------------------

def wipe(buf: bytearray) -> None:
    """Overwrite a mutable buffer with zeros."""
    buf[:] = bytes(len(buf))


class SensitiveBytes:
    """Owns a bytearray holding secret material and zeroes it on exit.

    Usage::

        with SensitiveBytes(key) as k:
            cipher = AESGCM(k)
    """

    __slots__ = ("_buf",)

    def __init__(self, data: bytes | bytearray):
        # take ownership of bytearrays so the caller's buffer gets wiped too
        self._buf = data if isinstance(data, bytearray) else bytearray(data)

    def __enter__(self) -> bytearray:
        return self._buf

    def __exit__(self, *exc_info) -> None:
        wipe(self._buf)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

class KeyDerivation:
    """Argon2id password → key derivation with externally configured cost."""

    def __init__(
        self,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
    ):
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    def derive_key(
        self, password: str, salt: Optional[bytes] = None
    ) -> tuple[bytearray, bytes]:
        """Derive a 32-byte key from a password.

        Args:
            password: Master password.
            salt: Salt to re-derive an existing key; a random 16-byte salt
                is generated when omitted.

        Returns:
            Tuple of (key, salt). The key is a bytearray owned by the caller.

        Raises:
            KeyDerivationFailed: If Argon2 rejects the parameters or fails.
        """
        if salt is None:
            salt = os.urandom(SALT_SIZE)
        try:
            raw = hash_secret_raw(
                secret=password.encode("utf-8"),
                salt=salt,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=KEY_LENGTH,
                type=Type.ID,
            )
        except HashingError as err:
            logger.error("Argon2 key derivation failed: %s", err)
            raise KeyDerivationFailed() from err
        return bytearray(raw), salt


def derive_subkey(key: bytes | bytearray, context: str) -> bytearray:
    """Derive a context-bound 32-byte sub-key using HKDF-SHA256.

    Args:
        key: Master key bytes.
        context: Context string for domain separation (e.g. "vault:<id>").

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # the master key is already salted by Argon2
        info=context.encode("utf-8"),
    )
    return bytearray(hkdf.derive(bytes(key)))


def key_id(key: bytes | bytearray) -> str:
    """Hex SHA-256 of a key, used to detect wrong-password attempts."""
    return hashlib.sha256(key).hexdigest()


# ---------------------------------------------------------------------------
# AES-256-GCM
# ---------------------------------------------------------------------------

def seal(key: bytes | bytearray, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
    """Encrypt with AES-256-GCM under a fresh random IV.

    Returns:
        Tuple of (iv, ciphertext, tag).
    """
    iv = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return iv, sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def open_sealed(
    key: bytes | bytearray, iv: bytes, ciphertext: bytes, tag: bytes
) -> bytes:
    """Decrypt AES-256-GCM output.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails.
    """
    return AESGCM(key).decrypt(iv, ciphertext + tag, None)


class VaultCipher:
    """Password-based authenticated encryption of vault payloads."""

    def __init__(self, kdf: Optional[KeyDerivation] = None):
        self.kdf = kdf or KeyDerivation()

    @classmethod
    def from_config(cls, config) -> "VaultCipher":
        return cls(
            KeyDerivation(
                time_cost=config.kdf_time_cost,
                memory_cost=config.kdf_memory_cost,
                parallelism=config.kdf_parallelism,
            )
        )

    def _working_key(
        self, password: str, salt: Optional[bytes], context: Optional[str]
    ) -> tuple[bytearray, bytes]:
        master, salt = self.kdf.derive_key(password, salt)
        if context is None:
            return master, salt
        with SensitiveBytes(master) as mk:
            return derive_subkey(mk, context), salt

    def encrypt(
        self, plaintext: bytes, password: str, context: Optional[str] = None
    ) -> EncryptedPayload:
        """Encrypt plaintext under a key derived from ``password``.

        Args:
            plaintext: Data to encrypt.
            password: Master password.
            context: Optional context string binding the sub-key to a usage.

        Returns:
            EncryptedPayload carrying salt, IV, tag and key id.
        """
        key, salt = self._working_key(password, None, context)
        with SensitiveBytes(key) as k:
            iv, ciphertext, tag = seal(k, plaintext)
            kid = key_id(k)
        return EncryptedPayload(
            ciphertext=ciphertext,
            iv=iv,
            tag=tag,
            salt=salt,
            key_id=kid,
            context=context,
        )

    def verify(
        self,
        password: str,
        salt: bytes,
        expected_key_id: str,
        context: Optional[str] = None,
    ) -> None:
        """Check a password against a stored salt and key id.

        Raises:
            InvalidKey: If the derived key id does not match.
            DecryptionFailed: If the salt is malformed.
        """
        if len(salt) != SALT_SIZE:
            raise DecryptionFailed()
        key, _ = self._working_key(password, salt, context)
        with SensitiveBytes(key) as k:
            if not hmac.compare_digest(key_id(k), expected_key_id):
                raise InvalidKey()

    def decrypt(self, payload: EncryptedPayload, password: str) -> bytes:
        """Decrypt a payload produced by :meth:`encrypt`.

        The key id is compared before the cipher runs; a mismatch fails
        fast as ``InvalidKey``. Both failure modes present the same message.

        Raises:
            InvalidKey: Wrong password.
            DecryptionFailed: Tag mismatch or malformed payload.
        """
        if (
            payload.algorithm != ALGORITHM
            or payload.version != FORMAT_VERSION
            or len(payload.iv) != NONCE_SIZE
            or len(payload.tag) != TAG_SIZE
            or len(payload.salt) != SALT_SIZE
        ):
            raise DecryptionFailed()
        key, _ = self._working_key(password, payload.salt, payload.context)
        with SensitiveBytes(key) as k:
            if not hmac.compare_digest(key_id(k), payload.key_id):
                raise InvalidKey()
            try:
                return open_sealed(k, payload.iv, payload.ciphertext, payload.tag)
            except InvalidTag as err:
                raise DecryptionFailed() from err


# ---------------------------------------------------------------------------
# Envelope serialization
# ---------------------------------------------------------------------------

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encode_payload(payload: EncryptedPayload) -> bytes:
    """Serialize a payload to its JSON interchange form.

    Returns:
        orjson-encoded bytes with base64 binary fields.
    """
    return orjson.dumps({
        "algorithm": payload.algorithm,
        "ciphertext": _b64(payload.ciphertext),
        "iv": _b64(payload.iv),
        "tag": _b64(payload.tag),
        "salt": _b64(payload.salt),
        "keyId": payload.key_id,
        "context": payload.context,
        "version": payload.version,
        "createdAt": payload.created_at,
    })


def decode_payload(blob: bytes) -> EncryptedPayload:
    """Parse the JSON interchange form back into a payload.

    Raises:
        DecryptionFailed: If the envelope is malformed.
    """
    try:
        raw = orjson.loads(blob)
        return EncryptedPayload(
            algorithm=raw["algorithm"],
            ciphertext=base64.b64decode(raw["ciphertext"], validate=True),
            iv=base64.b64decode(raw["iv"], validate=True),
            tag=base64.b64decode(raw["tag"], validate=True),
            salt=base64.b64decode(raw["salt"], validate=True),
            key_id=raw["keyId"],
            context=raw.get("context"),
            version=raw["version"],
            created_at=raw["createdAt"],
        )
    except (KeyError, TypeError, ValueError) as err:
        raise DecryptionFailed() from err
