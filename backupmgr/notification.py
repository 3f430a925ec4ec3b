"""
Best-effort operational notifications.

Each message is decorated, signed with HMAC-SHA256 and sent as a single frame
over a fresh TCP connection:

    0x0F || hex(HMAC-SHA256(secret, text)) || text || 0x0F

No acknowledgement is awaited and nothing is retried. Send failures are
logged and swallowed; a notification never aborts a backup.
"""

import ipaddress
import logging
import socket
from typing import Optional, Tuple

from .config import NotificationConfig
from .utils.crypto import MessageSigner


logger = logging.getLogger(__name__)

FRAME_DELIMITER = b'\x0f'
LABEL = '[b]Backup System[/b]: '
ERROR_OPEN = '[color=red]'
ERROR_CLOSE = '[/color]'


def decorate(text: str, error: bool = False) -> str:
    """Prefix the label and colour error messages red."""
    if error:
        return f"{LABEL}{ERROR_OPEN}{text}{ERROR_CLOSE}"
    return f"{LABEL}{text}"


def frame_message(secret: str, text: str) -> bytes:
    """
    Build the wire frame for an already decorated message.

    Args:
        secret: Shared HMAC secret
        text: Decorated message text

    Returns:
        Framed bytes ready to send
    """
    signed = MessageSigner(secret).hexdigest(text) + text
    return FRAME_DELIMITER + signed.encode('utf-8') + FRAME_DELIMITER


def parse_frame(frame: bytes) -> Tuple[str, str]:
    """
    Split a frame into its hex digest and text.

    Args:
        frame: Bytes as produced by frame_message()

    Returns:
        Tuple of (hexdigest, text)

    Raises:
        ValueError: If the frame is not delimited or too short
    """
    if len(frame) < 66 or not frame.startswith(FRAME_DELIMITER) or not frame.endswith(FRAME_DELIMITER):
        raise ValueError("Not a notification frame")

    body = frame[1:-1].decode('utf-8')
    return body[:64], body[64:]


def resolve_address(host: str, port: int) -> Optional[str]:
    """
    Resolve the notification host to a single address.

    Literal addresses are used as-is; names are resolved to their first IPv4
    address.

    Returns:
        Address string, or None if the name cannot be resolved
    """
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        pass

    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    except (OSError, UnicodeError) as e:
        logger.debug(f"Could not resolve notification host {host}: {e}")
        return None

    if not infos:
        return None
    return infos[0][4][0]


class NotificationChannel:
    """
    Sends authenticated notifications to the configured endpoint.

    An unconfigured channel silently drops every message.
    """

    def __init__(self, config: Optional[NotificationConfig]):
        self.config = config

    @property
    def configured(self) -> bool:
        config = self.config
        if config is None:
            return False
        if not config.host or not config.host.strip():
            return False
        if not config.secret or not config.secret.strip():
            return False
        if config.timeout < 0:
            return False
        return 1 <= config.port <= 65535

    def broadcast(self, text: str, error: bool = False) -> bool:
        """
        Send a message.

        Args:
            text: Message body
            error: Mark the message as an error

        Returns:
            True if the frame was handed to the network, False otherwise
        """
        if not text or not self.configured:
            return False

        try:
            address = resolve_address(self.config.host, self.config.port)
            if address is None:
                return False

            frame = frame_message(self.config.secret, decorate(text, error))
            self._send(address, frame)
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to send notification to {self.config.host}:{self.config.port}: {e}")
            return False

    def _send(self, address: str, frame: bytes):
        family = socket.AF_INET6 if ':' in address else socket.AF_INET

        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(self.config.timeout or None)
            sock.connect((address, self.config.port))
            sock.sendall(frame)
