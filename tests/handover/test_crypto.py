"""Tests for seller token encryption."""

import base64

import pytest
from hypothesis import given, settings, strategies as st

from handover_fakes import TEST_KEY
from src.handover.crypto import IV_LENGTH, TAG_LENGTH, CredentialError, decrypt_token, encrypt_token


OTHER_KEY = "ff" * 32


class TestDecryptToken:

    @given(token=st.text(min_size=1, max_size=200))
    @settings(max_examples=100)
    def test_decrypts_what_was_encrypted(self, token):
        assert decrypt_token(encrypt_token(token, TEST_KEY), TEST_KEY) == token

    def test_layout_is_iv_ciphertext_tag(self):
        raw = base64.b64decode(encrypt_token("gho_abc", TEST_KEY))
        assert len(raw) == IV_LENGTH + len("gho_abc") + TAG_LENGTH

    def test_fresh_iv_per_encryption(self):
        assert encrypt_token("gho_abc", TEST_KEY) != encrypt_token("gho_abc", TEST_KEY)

    def test_wrong_key(self):
        with pytest.raises(CredentialError):
            decrypt_token(encrypt_token("gho_abc", TEST_KEY), OTHER_KEY)

    def test_tampered_ciphertext(self):
        raw = bytearray(base64.b64decode(encrypt_token("gho_abc", TEST_KEY)))
        raw[-1] ^= 0x01
        with pytest.raises(CredentialError):
            decrypt_token(base64.b64encode(bytes(raw)).decode(), TEST_KEY)

    @pytest.mark.parametrize("value", ["not base64!", "", base64.b64encode(b"short").decode()])
    def test_malformed_values(self, value):
        with pytest.raises(CredentialError):
            decrypt_token(value, TEST_KEY)

    @pytest.mark.parametrize("key", ["", "abcd", "g" * 64])
    def test_bad_keys(self, key):
        with pytest.raises(CredentialError):
            encrypt_token("gho_abc", key)
