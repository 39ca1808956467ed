import asyncio

import pytest
from pydantic import ValidationError
from pikcel_client.errors import (
    ConfigurationError,
    NetworkError,
    PollingTimeoutError,
    RateLimitError,
    RemoteError,
    format_api_error,
)
from pikcel_client.models import (
    BulkJobParams,
    ClientConfig,
    Job,
    JobHistoryParams,
    JobStatus,
)
from pikcel_client.pikcel_client import PikcelAIClient
from pikcel_client.utils import (
    MAX_IMAGE_SIZE_BYTES,
    batch_items,
    is_job_final,
    is_job_processing,
    is_job_successful,
    job_status_label,
    process_in_parallel,
    validate_image_upload,
)


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig(api_url="https://app.pikcel.ai/", api_key="key")

        assert config.api_url == "https://app.pikcel.ai"
        assert config.timeout == 30.0
        assert config.max_retries == 3
        assert config.retry_delay == 1.0
        assert config.webhook_secret is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"api_url": "", "api_key": "key"},
            {"api_url": "   ", "api_key": "key"},
            {"api_url": "app.pikcel.ai", "api_key": "key"},
            {"api_url": "ftp://app.pikcel.ai", "api_key": "key"},
            {"api_url": "https://", "api_key": "key"},
            {"api_url": "https://app.pikcel.ai", "api_key": ""},
            {"api_url": "https://app.pikcel.ai", "api_key": "key", "timeout": 0},
            {"api_url": "https://app.pikcel.ai", "api_key": "key", "max_retries": -1},
        ],
    )
    def test_invalid_config_fails_construction(self, kwargs):
        with pytest.raises(ValidationError):
            ClientConfig(**kwargs)

    def test_config_is_immutable(self):
        config = ClientConfig(api_url="https://app.pikcel.ai", api_key="key")
        with pytest.raises(ValidationError):
            config.max_retries = 10

    def test_from_env(self):
        config = ClientConfig.from_env(
            {
                "PIKCEL_API_URL": "https://app.pikcel.ai",
                "PIKCEL_API_KEY": "key",
                "PIKCEL_WEBHOOK_SECRET": "secret",
                "PIKCEL_MAX_RETRIES": "5",
            }
        )

        assert config.webhook_secret == "secret"
        assert config.max_retries == 5

    def test_from_env_requires_url_and_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ClientConfig.from_env({"PIKCEL_API_URL": "https://app.pikcel.ai"})
        assert "PIKCEL_API_KEY" in str(exc_info.value)

        with pytest.raises(ConfigurationError):
            PikcelAIClient.from_env({})


class TestRequestModels:
    def test_job_history_query_drops_unset_fields(self):
        params = JobHistoryParams(limit=10, status=JobStatus.completed)
        assert params.to_query() == {"limit": "10", "status": "completed"}

    def test_bulk_job_needs_images(self):
        with pytest.raises(ValidationError):
            BulkJobParams(tool_id="upscale", input_images=[])

    def test_unknown_job_status_is_rejected(self):
        with pytest.raises(ValidationError):
            Job(id="job-1", status="queued")


class TestErrors:
    def test_remote_error(self):
        err = RemoteError("INVALID_TOOL", "Unknown tool", 400, {"tool_id": "x"})
        assert str(err) == "[INVALID_TOOL] HTTP 400: Unknown tool"
        assert err.to_dict()["details"] == {"tool_id": "x"}

    def test_network_error_keeps_cause(self):
        cause = ConnectionResetError()
        err = NetworkError("Network error occurred", cause)
        assert err.cause is cause
        assert err.to_dict() == {"error": "NetworkError", "message": "Network error occurred"}

    def test_format_api_error(self):
        assert format_api_error(RemoteError("X", "Image too small", 422)) == "Image too small"
        assert "connection" in format_api_error(NetworkError("Request timeout"))
        assert "60 seconds" in format_api_error(RateLimitError("slow down", 60))
        assert "later" in format_api_error(RateLimitError("slow down"))
        assert "longer" in format_api_error(PollingTimeoutError("job-1", 300))
        assert format_api_error(KeyError("x")) == "An unexpected error occurred"

    def test_polling_timeout_is_not_a_network_error(self):
        assert not isinstance(PollingTimeoutError("job-1", 300), NetworkError)


class TestJobHelpers:
    def test_status_predicates(self):
        assert is_job_final(JobStatus.cancelled)
        assert is_job_final("failed")
        assert not is_job_final(JobStatus.processing)
        assert is_job_processing("pending")
        assert job_status_label(JobStatus.processing) == "Processing"

    def test_is_job_successful(self):
        assert is_job_successful(
            Job(id="1", status="completed", output_image_url="https://x/out.jpg")
        )
        assert not is_job_successful(Job(id="1", status="completed"))
        assert not is_job_successful(Job(id="1", status="failed"))

    def test_validate_image_upload(self):
        assert validate_image_upload(1024, "image/png") is None
        assert "Unsupported" in validate_image_upload(1024, "application/pdf")
        assert "10MB" in validate_image_upload(MAX_IMAGE_SIZE_BYTES + 1, "image/jpeg")

    def test_batch_items(self):
        assert batch_items([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        with pytest.raises(ValueError):
            batch_items([1], 0)

    @pytest.mark.asyncio
    async def test_process_in_parallel_limits_concurrency(self):
        running = 0
        peak = 0

        async def worker(item: int, index: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return item * 10 + index

        results = await process_in_parallel([1, 2, 3, 4, 5], worker, concurrency=2)

        assert results == [10, 21, 32, 43, 54]
        assert peak == 2
