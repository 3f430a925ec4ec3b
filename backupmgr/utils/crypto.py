"""
Message authentication for operational notifications.
Uses HMAC-SHA256 keyed with the shared secret configured for the endpoint.
"""

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac


class MessageSigner:
    """Computes and checks HMAC-SHA256 digests over UTF-8 text."""

    def __init__(self, secret: str):
        """
        Initialize the signer.

        Args:
            secret: Shared secret, encoded as UTF-8 to form the HMAC key

        Raises:
            ValueError: If secret is empty
        """
        if not secret:
            raise ValueError("MessageSigner requires a non-empty secret.")

        self._key = secret.encode('utf-8')

    def _hmac(self) -> hmac.HMAC:
        return hmac.HMAC(self._key, hashes.SHA256())

    def digest(self, text: str) -> bytes:
        """
        Compute the raw digest of a message.

        Args:
            text: Message text

        Returns:
            32-byte HMAC-SHA256 digest
        """
        h = self._hmac()
        h.update(text.encode('utf-8'))
        return h.finalize()

    def hexdigest(self, text: str) -> str:
        """Lowercase hex encoding of digest()."""
        return self.digest(text).hex()

    def verify(self, text: str, hexdigest: str) -> bool:
        """
        Check a hex digest against a message in constant time.

        Args:
            text: Message text
            hexdigest: Hex digest received with the message

        Returns:
            True if the digest matches
        """
        try:
            expected = bytes.fromhex(hexdigest)
        except ValueError:
            return False

        h = self._hmac()
        h.update(text.encode('utf-8'))
        try:
            h.verify(expected)
            return True
        except InvalidSignature:
            return False
