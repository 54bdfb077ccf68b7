"""Tests for AES-GCM token encryption."""

import pytest

from crm_sync.core import encryption
from crm_sync.core.errors import ConfigurationError, TokenDecryptionError


def test_encrypt_decrypt_round_trip():
    ciphertext = encryption.encrypt_token("ya29.secret-token")

    nonce, tag, payload = ciphertext.split(":")
    assert len(bytes.fromhex(nonce)) == encryption.NONCE_BYTES
    assert len(bytes.fromhex(tag)) == encryption.TAG_BYTES
    assert "secret" not in ciphertext
    assert encryption.decrypt_token(ciphertext) == "ya29.secret-token"


def test_encrypt_uses_fresh_nonce():
    assert encryption.encrypt_token("same") != encryption.encrypt_token("same")


def test_decrypt_rejects_tampered_ciphertext():
    nonce, tag, payload = encryption.encrypt_token("token").split(":")
    flipped = format(int(payload[:2], 16) ^ 0x01, "02x") + payload[2:]

    with pytest.raises(TokenDecryptionError):
        encryption.decrypt_token(f"{nonce}:{tag}:{flipped}")


@pytest.mark.parametrize(
    "value",
    ["", "not-encrypted", "aa:bb", "zz:zz:zz", "00:00:00"],
)
def test_decrypt_rejects_malformed_input(value):
    with pytest.raises(TokenDecryptionError):
        encryption.decrypt_token(value)


def test_missing_key_is_configuration_error(monkeypatch):
    monkeypatch.setattr(encryption.settings, "TOKEN_ENCRYPTION_KEY", "")

    assert encryption.is_encryption_configured() is False
    with pytest.raises(ConfigurationError):
        encryption.encrypt_token("token")


def test_short_key_is_configuration_error(monkeypatch):
    monkeypatch.setattr(encryption.settings, "TOKEN_ENCRYPTION_KEY", "abcd")

    with pytest.raises(ConfigurationError):
        encryption.encrypt_token("token")
