"""Decryption strategies for encrypted image archives.

Senders in the field encode the key in one of two ways, so the engine tries an
ordered list of strategies and keeps the first one whose PKCS#7 padding
validates.

Padding is the only acceptance signal.  A wrong key still yields valid padding
for roughly one ciphertext in 256, in which case the "winning" strategy returns
garbage and the archive stage rejects it.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import ClassVar, Dict, Optional, Protocol, Sequence, Tuple, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as symmetric_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import ViewerConfig

logger = logging.getLogger(__name__)

UNABLE_TO_DECRYPT = "unable to decrypt"

_BLOCK_BITS = algorithms.AES.block_size
_BLOCK_BYTES = _BLOCK_BITS // 8
_AES_KEY_BYTES = (16, 24, 32)

_HASHES: Dict[str, type] = {"sha256": hashes.SHA256, "sha1": hashes.SHA1}


@dataclass(frozen=True, slots=True)
class Ok:
    """Recovered plaintext and the strategy that produced it."""

    plaintext: bytes
    strategy: str = ""

    def __repr__(self) -> str:
        return f"Ok(<{len(self.plaintext)} bytes>, strategy={self.strategy!r})"


@dataclass(frozen=True, slots=True)
class Failed:
    """A rejected decryption or extraction, with a user-facing reason."""

    reason: str


DecryptionOutcome = Union[Ok, Failed]


class Strategy(Protocol):
    """One key-derivation convention."""

    name: str

    def attempt(self, ciphertext: bytes, key_material: str) -> DecryptionOutcome:
        ...


def cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    """AES-CBC encrypt ``plaintext`` with PKCS#7 padding."""

    padder = symmetric_padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def cbc_decrypt(key: bytes, iv: bytes, body: bytes) -> Optional[bytes]:
    """AES-CBC decrypt ``body`` and strip PKCS#7 padding.

    Returns ``None`` instead of raising when the key or IV has an unusable size,
    the body is not whole blocks, or the padding does not validate.
    """

    if not body or len(body) % _BLOCK_BYTES:
        return None
    try:
        cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    except ValueError:
        return None

    decryptor = cipher.decryptor()
    padded = decryptor.update(body) + decryptor.finalize()

    unpadder = symmetric_padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        return None


def derive_key_and_iv(
    passphrase: str,
    salt: bytes,
    *,
    iterations: int,
    hash_name: str = "sha256",
    key_size: int = 32,
    iv_size: int = _BLOCK_BYTES,
) -> Tuple[bytes, bytes]:
    """Stretch ``passphrase`` into ``key_size`` key bytes followed by an IV."""

    try:
        algorithm = _HASHES[hash_name.strip().lower()]()
    except KeyError as exc:
        raise ValueError(f"Unsupported PBKDF2 hash: {hash_name}") from exc

    kdf = PBKDF2HMAC(
        algorithm=algorithm,
        length=key_size + iv_size,
        salt=salt,
        iterations=iterations,
    )
    material = kdf.derive(passphrase.encode("utf-8"))
    return material[:key_size], material[key_size:]


def _finish(plaintext: Optional[bytes], strategy: str) -> DecryptionOutcome:
    if plaintext is None:
        return Failed("invalid padding")
    if not plaintext:
        return Failed("empty plaintext")
    return Ok(plaintext, strategy)


@dataclass(slots=True)
class DirectKeyStrategy:
    """The key material is the literal AES key; the IV prefixes the ciphertext.

    When ``iv`` is set the IV is taken from it instead and the whole payload is
    cipher body.
    """

    config: ViewerConfig
    iv: Optional[str] = None

    name: ClassVar[str] = "direct-key"

    def _split(self, ciphertext: bytes) -> Optional[Tuple[bytes, bytes]]:
        if self.iv is not None:
            return self.iv.encode("utf-8"), ciphertext
        size = self.config.iv_size_bytes
        if len(ciphertext) <= size:
            return None
        return ciphertext[:size], ciphertext[size:]

    def attempt(self, ciphertext: bytes, key_material: str) -> DecryptionOutcome:
        try:
            parts = self._split(ciphertext)
            key = key_material.encode("utf-8")
        except UnicodeEncodeError:
            return Failed("key material is not encodable as UTF-8")
        if parts is None:
            return Failed("ciphertext too short")
        iv, body = parts
        if len(key) not in _AES_KEY_BYTES:
            return Failed("key is not a valid AES key size")
        return _finish(cbc_decrypt(key, iv, body), self.name)

    def seal(self, plaintext: bytes, key_material: str) -> bytes:
        """Encrypt ``plaintext`` the way a direct-key sender does."""

        key = key_material.encode("utf-8")
        if self.iv is not None:
            return cbc_encrypt(key, self.iv.encode("utf-8"), plaintext)
        iv = os.urandom(self.config.iv_size_bytes)
        return iv + cbc_encrypt(key, iv, plaintext)


@dataclass(slots=True)
class PassphraseSaltStrategy:
    """PBKDF2 over (passphrase, salt prefix) yields the AES key and the IV."""

    config: ViewerConfig

    name: ClassVar[str] = "passphrase-salt"

    def _derive(self, passphrase: str, salt: bytes) -> Tuple[bytes, bytes]:
        return derive_key_and_iv(
            passphrase,
            salt,
            iterations=self.config.pbkdf2_iterations,
            hash_name=self.config.pbkdf2_hash,
            key_size=self.config.derived_key_size_bytes,
            iv_size=self.config.iv_size_bytes,
        )

    def attempt(self, ciphertext: bytes, key_material: str) -> DecryptionOutcome:
        size = self.config.salt_size_bytes
        if len(ciphertext) <= size:
            return Failed("ciphertext too short")
        salt, body = ciphertext[:size], ciphertext[size:]
        try:
            key, iv = self._derive(key_material, salt)
        except UnicodeEncodeError:
            return Failed("passphrase is not encodable as UTF-8")
        return _finish(cbc_decrypt(key, iv, body), self.name)

    def seal(
        self, plaintext: bytes, key_material: str, salt: bytes | None = None
    ) -> bytes:
        """Encrypt ``plaintext`` the way a passphrase sender does."""

        if salt is None:
            salt = os.urandom(self.config.salt_size_bytes)
        elif len(salt) != self.config.salt_size_bytes:
            raise ValueError(f"Salt must be {self.config.salt_size_bytes} bytes")
        key, iv = self._derive(key_material, salt)
        return salt + cbc_encrypt(key, iv, plaintext)


class DecryptionEngine:
    """Try each strategy in order; the first :class:`Ok` wins."""

    def __init__(self, strategies: Sequence[Strategy]):
        if not strategies:
            raise ValueError("At least one decryption strategy is required")
        self._strategies = tuple(strategies)

    @property
    def strategies(self) -> Tuple[Strategy, ...]:
        return self._strategies

    def decrypt(self, ciphertext: bytes, key_material: str) -> DecryptionOutcome:
        for strategy in self._strategies:
            outcome = strategy.attempt(ciphertext, key_material)
            if isinstance(outcome, Ok):
                logger.debug("Payload opened with the %s strategy", strategy.name)
                return outcome
            logger.debug("%s strategy rejected payload: %s", strategy.name, outcome.reason)
        return Failed(UNABLE_TO_DECRYPT)


def default_engine(
    config: ViewerConfig | None = None, iv: Optional[str] = None
) -> DecryptionEngine:
    """Return the engine used for live payloads: direct key, then passphrase."""

    config = config or ViewerConfig()
    return DecryptionEngine(
        [DirectKeyStrategy(config, iv=iv), PassphraseSaltStrategy(config)]
    )


def decrypt(
    ciphertext: bytes, key_material: str, config: ViewerConfig | None = None
) -> DecryptionOutcome:
    """Decrypt ``ciphertext`` with the default strategy order."""

    return default_engine(config).decrypt(ciphertext, key_material)


__all__ = [
    "UNABLE_TO_DECRYPT",
    "Ok",
    "Failed",
    "DecryptionOutcome",
    "Strategy",
    "cbc_encrypt",
    "cbc_decrypt",
    "derive_key_and_iv",
    "DirectKeyStrategy",
    "PassphraseSaltStrategy",
    "DecryptionEngine",
    "default_engine",
    "decrypt",
]
