import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest
from pikcel_client.errors import ConfigurationError, WebhookVerificationError
from pikcel_client.models import ClientConfig, JobStatus, WebhookEvent
from pikcel_client.pikcel_client import PikcelAIClient
from pikcel_client.webhooks import WebhookVerifier, hmac_sha256

SECRET = "whsec_test"
NOW = datetime(2025, 10, 5, 12, 0, tzinfo=timezone.utc)


def sign(payload: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def delivery(timestamp: datetime = NOW) -> bytes:
    return json.dumps(
        {
            "event": "job.completed",
            "job_id": "job-1",
            "job": {
                "id": "job-1",
                "status": "completed",
                "output_image_url": "https://x/out.jpg",
            },
            "timestamp": timestamp.isoformat(),
            "signature": "ignored",
        }
    ).encode()


@pytest.fixture
def verifier() -> WebhookVerifier:
    return WebhookVerifier(SECRET)


def test_valid_signature(verifier):
    payload = delivery()
    assert verifier.verify(payload, sign(payload)) is True


def test_signature_is_lowercase_hex(verifier):
    signature = verifier.compute_signature(b"{}")
    assert signature == signature.lower()
    assert len(signature) == 64


def test_string_and_bytes_payloads_agree(verifier):
    payload = delivery()
    assert verifier.verify(payload.decode("utf-8"), sign(payload)) is True


def test_wrong_secret_fails(verifier):
    payload = delivery()
    assert verifier.verify(payload, sign(payload, "other-secret")) is False


def test_mutated_payload_fails(verifier):
    payload = delivery()
    signature = sign(payload)
    assert verifier.verify(payload.replace(b"completed", b"failed"), signature) is False


def test_uppercase_or_empty_signature_fails(verifier):
    payload = delivery()
    assert verifier.verify(payload, sign(payload).upper()) is False
    assert verifier.verify(payload, "") is False


def test_missing_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        WebhookVerifier(None).verify(b"{}", "abc")


def test_client_without_secret_raises_on_verify():
    client = PikcelAIClient(ClientConfig(api_url="https://pikcel.test", api_key="key"))
    with pytest.raises(ConfigurationError):
        client.verify_webhook_signature("{}", "abc")


def test_client_verifies_with_configured_secret():
    client = PikcelAIClient(
        ClientConfig(api_url="https://pikcel.test", api_key="key", webhook_secret=SECRET)
    )
    payload = delivery()
    assert client.verify_webhook_signature(payload, sign(payload)) is True


def test_custom_digest_is_used():
    calls = []

    def digest(key: bytes, message: bytes) -> bytes:
        calls.append((key, message))
        return hmac_sha256(key, message)

    verifier = WebhookVerifier(SECRET, digest=digest)
    payload = delivery()

    assert verifier.verify(payload, sign(payload)) is True
    assert calls == [(SECRET.encode(), payload)]


def test_timestamp_tolerance(verifier):
    assert verifier.verify_timestamp(NOW - timedelta(minutes=4), now=NOW) is True
    assert verifier.verify_timestamp(NOW + timedelta(minutes=4), now=NOW) is True
    assert verifier.verify_timestamp(NOW - timedelta(minutes=6), now=NOW) is False
    assert verifier.verify_timestamp(datetime(2025, 10, 5, 11, 58), now=NOW) is True


def test_construct_event(verifier):
    payload = delivery()

    event = verifier.construct_event(payload, sign(payload), now=NOW)

    assert event.event is WebhookEvent.job_completed
    assert event.job.status == JobStatus.completed
    assert event.job.output_image_url == "https://x/out.jpg"


def test_construct_event_rejects_bad_signature(verifier):
    with pytest.raises(WebhookVerificationError):
        verifier.construct_event(delivery(), "deadbeef", now=NOW)


def test_construct_event_rejects_replay(verifier):
    payload = delivery(timestamp=NOW - timedelta(hours=1))

    with pytest.raises(WebhookVerificationError):
        verifier.construct_event(payload, sign(payload), now=NOW)


def test_construct_event_rejects_malformed_body(verifier):
    payload = b'{"event": "job.exploded"}'

    with pytest.raises(WebhookVerificationError):
        verifier.construct_event(payload, sign(payload), now=NOW)
