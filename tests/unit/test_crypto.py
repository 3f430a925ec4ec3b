"""
Unit tests for message signing (backupmgr/utils/crypto.py).

Tests MessageSigner HMAC-SHA256 digests and verification.
"""

import hashlib
import hmac

import pytest

from backupmgr.utils.crypto import MessageSigner


class TestMessageSigner:
    """Test MessageSigner."""

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            MessageSigner('')

    def test_digest_matches_reference_hmac(self):
        signer = MessageSigner('s3cret')
        expected = hmac.new(b's3cret', b'hello', hashlib.sha256).digest()

        assert signer.digest('hello') == expected

    def test_hexdigest_is_lowercase(self):
        hexdigest = MessageSigner('s3cret').hexdigest('hello')

        assert len(hexdigest) == 64
        assert hexdigest == hexdigest.lower()

    def test_secret_encoded_as_utf8(self):
        signer = MessageSigner('clé')
        expected = hmac.new('clé'.encode('utf-8'), b'x', hashlib.sha256).hexdigest()

        assert signer.hexdigest('x') == expected

    def test_different_secrets_different_digests(self):
        assert MessageSigner('a').hexdigest('text') != MessageSigner('b').hexdigest('text')

    def test_verify_accepts_matching_digest(self):
        signer = MessageSigner('s3cret')

        assert signer.verify('hello', signer.hexdigest('hello')) is True

    def test_verify_rejects_tampered_text(self):
        signer = MessageSigner('s3cret')

        assert signer.verify('hellO', signer.hexdigest('hello')) is False

    def test_verify_rejects_non_hex(self):
        assert MessageSigner('s3cret').verify('hello', 'zz' * 32) is False
