"""
Base Handler

Abstract base class for webhook sources.
Each handler verifies the request signature over the raw body and turns a
verified payload into a WebhookJob for the queue.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ...common.errors import AuthenticationError
from ...common.schemas import WebhookJob


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``"""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def require_match(expected: str, provided: str, source: str) -> None:
    """Constant-time comparison; raises AuthenticationError on mismatch"""
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        raise AuthenticationError(f"{source} signature mismatch")


class BaseHandler(ABC):
    """
    Abstract base class for source handlers.

    Each handler must implement:
    - verify_signature: Check the request signature (raises on failure)
    - parse_event: Convert a verified payload to a job, or None to ignore it
    """

    def __init__(self, source_name: str, max_attempts: int = 10):
        """
        Initialize handler.

        Args:
            source_name: Name of the source (e.g., "slack", "github")
            max_attempts: Delivery attempt ceiling stamped on every job
        """
        self.source_name = source_name
        self.max_attempts = max_attempts

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str, timestamp: str = "") -> None:
        """
        Verify the webhook signature. Must run before the body is parsed.

        Args:
            body: Raw request body
            signature: Signature from headers
            timestamp: Timestamp from headers (if the source signs one)

        Raises:
            AuthenticationError: Missing header, empty secret, stale
                timestamp or mismatch
        """
        pass

    @abstractmethod
    def parse_event(self, raw_data: Dict[str, Any], **metadata: Any) -> Optional[WebhookJob]:
        """
        Parse a verified payload into a job.

        Args:
            raw_data: Decoded request body
            **metadata: Source-specific header values

        Returns:
            WebhookJob or None if the event should be ignored
        """
        pass
