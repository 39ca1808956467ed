import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from loguru import logger
from pydantic import ValidationError

from pikcel_client.errors import ConfigurationError, WebhookVerificationError
from pikcel_client.models import WebhookPayload

Digest = Callable[[bytes, bytes], bytes]


def hmac_sha256(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


class WebhookVerifier:
    """Authenticates PikcelAI webhook deliveries.

    The signature is the lowercase hex HMAC-SHA256 of the raw request
    body keyed by the shared webhook secret. The digest primitive is
    injectable so a different crypto backend can be swapped in.
    """

    def __init__(
        self,
        secret: Optional[str],
        tolerance: float = 300.0,
        digest: Digest = hmac_sha256,
    ):
        self._secret = secret
        self.tolerance = tolerance
        self._digest = digest
        self.logger = logger

    def compute_signature(self, payload: Union[str, bytes]) -> str:
        if not self._secret:
            raise ConfigurationError("Webhook secret not configured")
        return self._digest(_to_bytes(self._secret), _to_bytes(payload)).hex()

    def verify(self, payload: Union[str, bytes], signature: str) -> bool:
        expected = self.compute_signature(payload)
        if not signature:
            return False
        return hmac.compare_digest(expected.encode("ascii"), _to_bytes(signature))

    def verify_timestamp(
        self, timestamp: datetime, now: Optional[datetime] = None
    ) -> bool:
        """Rejects deliveries emitted too far from now to block replays"""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return abs((now - timestamp).total_seconds()) <= self.tolerance

    def construct_event(
        self,
        payload: Union[str, bytes],
        signature: str,
        now: Optional[datetime] = None,
    ) -> WebhookPayload:
        """Verifies and parses a raw delivery into a trusted WebhookPayload"""
        if not self.verify(payload, signature):
            self.logger.warning("Rejected webhook with invalid signature")
            raise WebhookVerificationError("Invalid webhook signature")

        try:
            event = WebhookPayload.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as e:
            raise WebhookVerificationError(f"Malformed webhook payload: {e}") from e

        if not self.verify_timestamp(event.timestamp, now):
            self.logger.warning(
                f"Rejected stale webhook for job {event.job_id} emitted at {event.timestamp}"
            )
            raise WebhookVerificationError("Webhook timestamp outside tolerance")

        self.logger.debug(f"Accepted webhook {event.event.value} for job {event.job_id}")
        return event
