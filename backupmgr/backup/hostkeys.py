"""
Host identity verification for SFTP connections.

A server's identity is written as ``<key type>#<base64 key>#<base64 fingerprint>``.
When a trusted identity is configured, a connection only proceeds if the
presented identity matches it exactly. Without one every host is accepted.
"""

import base64
import logging
from concurrent.futures import Future
from typing import Optional, Tuple

import paramiko

from ..exceptions import HostIdentityUntrusted


logger = logging.getLogger(__name__)


def compose_host_identity(key: paramiko.PKey) -> str:
    """
    Build the identity string for a server host key.

    Args:
        key: Host key presented by the server

    Returns:
        ``name#base64(key bytes)#base64(fingerprint)``
    """
    encoded_key = base64.b64encode(key.asbytes()).decode('ascii')
    fingerprint = base64.b64encode(key.get_fingerprint()).decode('ascii')
    return f"{key.get_name()}#{encoded_key}#{fingerprint}"


class TrustOnConnectPolicy(paramiko.MissingHostKeyPolicy):
    """
    Host key policy that publishes its decision through a one-shot future.

    paramiko invokes missing_host_key() on the thread running the connection.
    The decision, ``(trusted, presented_identity)``, is set on ``decision`` so
    the thread that started the connection can wait for it with a timeout.
    If the connection dies before a key is presented, abandon() hands the
    failure to the waiting thread instead.
    """

    def __init__(self, expected: Optional[str] = None):
        self.expected = expected or None
        self.decision: Future = Future()

    def evaluate(self, presented: str) -> bool:
        if self.expected is None:
            return True
        return presented == self.expected

    def missing_host_key(self, client, hostname, key):
        presented = compose_host_identity(key)
        trusted = self.evaluate(presented)

        if not self.decision.done():
            self.decision.set_result((trusted, presented))

        if not trusted:
            logger.error(f"Host key for {hostname} does not match the trusted identity: {presented}")
            raise HostIdentityUntrusted(f"Host key for {hostname} is not trusted: {presented}")

    def abandon(self, connecting: Future):
        """Done-callback for the connect future."""
        if self.decision.done():
            return

        error = connecting.exception()
        if error is None:
            # Connected without consulting the policy (key already known)
            self.decision.set_result((True, None))
        else:
            self.decision.set_exception(error)

    def wait(self, timeout: Optional[float]) -> Tuple[bool, Optional[str]]:
        """
        Block until the host key has been evaluated.

        Raises:
            concurrent.futures.TimeoutError: If no decision arrives in time
            Exception: Whatever ended the connection before a key was presented
        """
        return self.decision.result(timeout=timeout)
