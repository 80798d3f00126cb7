"""
GitHub Handler

Verifies ``X-Hub-Signature-256`` and shape-checks pull request webhooks
before they are enqueued. Business validation happens in the worker.
"""

from typing import Any, Dict, Optional

from ...common.errors import AuthenticationError, ValidationError
from ...common.schemas import SUPPORTED_GITHUB_EVENTS, JobKind, WebhookJob
from .base import BaseHandler, hmac_sha256_hex, require_match

SIGNATURE_PREFIX = "sha256="


class GitHubHandler(BaseHandler):
    """
    Handler for GitHub repository webhooks.

    Processes:
    - pull_request
    - pull_request_review

    Other event types (ping, push, ...) are acknowledged and ignored.
    """

    def __init__(self, webhook_secret: str = "", max_attempts: int = 10):
        super().__init__("github", max_attempts=max_attempts)
        self._webhook_secret = webhook_secret

    def verify_signature(
        self,
        body: bytes,
        signature: str,
        timestamp: str = "",
        secret: Optional[str] = None,
    ) -> None:
        """
        Verify a GitHub HMAC signature.

        Args:
            body: Raw request body
            signature: X-Hub-Signature-256 header
            timestamp: Unused; GitHub does not sign a timestamp
            secret: Per-repo secret overriding the global one
        """
        secret = secret or self._webhook_secret
        if not secret:
            raise AuthenticationError("github webhook secret is not configured")
        if not signature:
            raise AuthenticationError("missing X-Hub-Signature-256 header")
        if not signature.startswith(SIGNATURE_PREFIX):
            raise AuthenticationError("unsupported github signature scheme")

        expected = SIGNATURE_PREFIX + hmac_sha256_hex(secret, body)
        require_match(expected, signature, self.source_name)

    def is_supported(self, event_type: Optional[str]) -> bool:
        return event_type in SUPPORTED_GITHUB_EVENTS

    def validate_payload(self, raw_data: Any) -> None:
        """
        Minimal shape check done on the fast path.

        Raises:
            ValidationError: If ``action`` or ``repository`` is missing
        """
        if not isinstance(raw_data, dict):
            raise ValidationError("payload must be a JSON object")
        if not raw_data.get("action"):
            raise ValidationError("payload is missing 'action'")
        repository = raw_data.get("repository")
        if not isinstance(repository, dict) or not repository.get("full_name"):
            raise ValidationError("payload is missing 'repository'")

    def parse_event(self, raw_data: Dict[str, Any], **metadata: Any) -> Optional[WebhookJob]:
        """
        Build a job from a verified webhook.

        Args:
            raw_data: Decoded webhook body
            event_type: X-GitHub-Event header
            delivery_id: X-GitHub-Delivery header
        """
        event_type = metadata.get("event_type")
        if not self.is_supported(event_type):
            return None

        self.validate_payload(raw_data)
        return WebhookJob(
            kind=JobKind.GITHUB_EVENT,
            event_type=event_type,
            delivery_id=metadata.get("delivery_id"),
            payload=raw_data,
            max_attempts=self.max_attempts,
        )
