from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from secure_image_viewer.config import ViewerConfig
from secure_image_viewer.security import (
    UNABLE_TO_DECRYPT,
    DecryptionEngine,
    DirectKeyStrategy,
    Failed,
    Ok,
    PassphraseSaltStrategy,
    cbc_decrypt,
    cbc_encrypt,
    decrypt,
    default_engine,
    derive_key_and_iv,
)

DIRECT_KEY = "0123456789abcdef"
PASSPHRASE = "correct horse battery staple"
PLAINTEXT = b"PK\x03\x04 pretend this is a zip archive" * 8


def test_cbc_matches_nist_vector():
    # NIST SP 800-38A, F.2.1 CBC-AES128.Encrypt, first block
    key = bytes.fromhex("2b7e151628aed2a6abf7158809cf4f3c")
    iv = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
    block = bytes.fromhex("6bc1bee22e409f96e93d7e117393172a")

    ciphertext = cbc_encrypt(key, iv, block)

    assert ciphertext[:16].hex() == "7649abac8119b246cee98e9b12e9197d"
    assert len(ciphertext) == 32
    assert cbc_decrypt(key, iv, ciphertext) == block


@pytest.mark.parametrize(
    "iterations, expected",
    [
        (1, "120fb6cffcf8b32c43e7225256c4f837a86548c92ccc35480805987cb70be17b"),
        (2, "ae4d0c95af6b46d32d0adff928f06dd02a303f8ef3c251dfd6e2d85a95474c43"),
        (4096, "c5e478d59288c841aa530db6845c4c8d962893a001ce4e11a4963873aa98134a"),
    ],
)
def test_derivation_matches_pbkdf2_sha256_vectors(iterations, expected):
    key, iv = derive_key_and_iv("password", b"salt", iterations=iterations)

    assert key.hex() == expected
    assert len(iv) == 16


def test_derivation_matches_pbkdf2_sha1_vector():
    # RFC 6070
    key, iv = derive_key_and_iv(
        "password", b"salt", iterations=4096, hash_name="sha1", key_size=20, iv_size=0
    )

    assert key.hex() == "4b007901b765489abead49d926f721d065a429c1"
    assert iv == b""


def test_derivation_rejects_unknown_hash():
    with pytest.raises(ValueError):
        derive_key_and_iv("password", b"salt", iterations=1, hash_name="md5")


def test_direct_key_roundtrip(config: ViewerConfig):
    strategy = DirectKeyStrategy(config)
    ciphertext = strategy.seal(PLAINTEXT, DIRECT_KEY)

    outcome = decrypt(ciphertext, DIRECT_KEY, config)

    assert outcome == Ok(PLAINTEXT, "direct-key")


@pytest.mark.parametrize("key", ["k" * 24, "k" * 32])
def test_direct_key_accepts_longer_aes_keys(config: ViewerConfig, key: str):
    ciphertext = DirectKeyStrategy(config).seal(PLAINTEXT, key)

    assert DirectKeyStrategy(config).attempt(ciphertext, key) == Ok(PLAINTEXT, "direct-key")


def test_passphrase_roundtrip_falls_back_after_direct_key(config: ViewerConfig):
    ciphertext = PassphraseSaltStrategy(config).seal(PLAINTEXT, PASSPHRASE)

    assert isinstance(DirectKeyStrategy(config).attempt(ciphertext, PASSPHRASE), Failed)
    assert decrypt(ciphertext, PASSPHRASE, config) == Ok(PLAINTEXT, "passphrase-salt")


def test_passphrase_roundtrip_with_sha1_prf():
    config = ViewerConfig(pbkdf2_hash="sha1")
    ciphertext = PassphraseSaltStrategy(config).seal(PLAINTEXT, PASSPHRASE, salt=b"8bytes!!")

    assert ciphertext[:8] == b"8bytes!!"
    assert decrypt(ciphertext, PASSPHRASE, config) == Ok(PLAINTEXT, "passphrase-salt")


def test_seal_rejects_wrong_salt_size(config: ViewerConfig):
    with pytest.raises(ValueError):
        PassphraseSaltStrategy(config).seal(PLAINTEXT, PASSPHRASE, salt=b"short")


def test_direct_key_rejects_invalid_padding(config: ViewerConfig):
    key = DIRECT_KEY.encode("utf-8")
    iv = bytes(16)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    body = encryptor.update(bytes(16)) + encryptor.finalize()

    outcome = DirectKeyStrategy(config).attempt(iv + body, DIRECT_KEY)

    assert outcome == Failed("invalid padding")


def test_both_strategies_failing_reports_unable_to_decrypt(config: ViewerConfig):
    garbage = bytes(range(32))

    assert decrypt(garbage, PASSPHRASE, config) == Failed(UNABLE_TO_DECRYPT)


@pytest.mark.parametrize("ciphertext", [b"", b"\x00" * 8, b"\x00" * 16, b"\x00" * 33])
def test_short_or_ragged_ciphertext_fails(config: ViewerConfig, ciphertext: bytes):
    assert decrypt(ciphertext, DIRECT_KEY, config) == Failed(UNABLE_TO_DECRYPT)


def test_unencodable_key_material_fails_without_raising(config: ViewerConfig):
    ciphertext = DirectKeyStrategy(config).seal(PLAINTEXT, DIRECT_KEY)

    assert decrypt(ciphertext, "\ud800", config) == Failed(UNABLE_TO_DECRYPT)


def test_explicit_iv_means_no_prefix(config: ViewerConfig):
    strategy = DirectKeyStrategy(config, iv="abcdefghijklmnop")
    ciphertext = strategy.seal(PLAINTEXT, DIRECT_KEY)

    assert len(ciphertext) % 16 == 0
    assert default_engine(config, iv="abcdefghijklmnop").decrypt(
        ciphertext, DIRECT_KEY
    ) == Ok(PLAINTEXT, "direct-key")


def test_engine_returns_first_success_in_order():
    calls = []

    class Recorder:
        def __init__(self, name, outcome):
            self.name = name
            self._outcome = outcome

        def attempt(self, ciphertext, key_material):
            calls.append(self.name)
            return self._outcome

    engine = DecryptionEngine(
        [
            Recorder("first", Failed("nope")),
            Recorder("second", Ok(b"plain", "second")),
            Recorder("third", Ok(b"other", "third")),
        ]
    )

    assert engine.decrypt(b"data", "key") == Ok(b"plain", "second")
    assert calls == ["first", "second"]


def test_engine_requires_a_strategy():
    with pytest.raises(ValueError):
        DecryptionEngine([])


def test_decrypt_is_repeatable(config: ViewerConfig):
    ciphertext = DirectKeyStrategy(config).seal(PLAINTEXT, DIRECT_KEY)

    assert decrypt(ciphertext, DIRECT_KEY, config) == decrypt(ciphertext, DIRECT_KEY, config)
