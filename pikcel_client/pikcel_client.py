import asyncio
import json
import mimetypes
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import quote
from typing import (
    Any,
    Awaitable,
    BinaryIO,
    Callable,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Pattern,
    Type,
    TypeVar,
    Union,
)

import aiohttp
from loguru import logger
from pydantic import BaseModel, ValidationError

from pikcel_client.cache import ResponseCache
from pikcel_client.errors import (
    NetworkError,
    PollingCancelledError,
    PollingTimeoutError,
    RateLimitError,
    RemoteError,
)
from pikcel_client.models import (
    AIModel,
    BulkJob,
    BulkJobParams,
    ClientConfig,
    DispatchJobParams,
    Envelope,
    Job,
    JobHistoryPage,
    JobHistoryParams,
    PollingConfig,
    PollState,
    RequestOptions,
    Template,
    UploadedImage,
    UserProfile,
    WebhookPayload,
)
from pikcel_client.poller import JobPoller, ProgressCallback
from pikcel_client.webhooks import WebhookVerifier

CLIENT_NAME = "pikcel-python-client"
CLIENT_VERSION = "1.0.0"

MODELS_CACHE_KEY = "ai-models"
TEMPLATES_CACHE_KEY = "templates"
PROFILE_CACHE_KEY = "user-profile"

MODELS_TTL = 5 * 60
TEMPLATES_TTL = 10 * 60
PROFILE_TTL = 30  # short, credit balance must not look stale

DEFAULT_RETRY_AFTER = 60

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


class _RawResponse(NamedTuple):
    status: int
    reason: Optional[str]
    headers: Mapping[str, str]
    body: bytes


def _parse_retry_after(value: Optional[str]) -> int:
    """Retry-After is either delta-seconds or an HTTP date"""
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0, int(value.strip()))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
    if when is None:
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status == 408


class PikcelAIClient:
    def __init__(
        self,
        config: ClientConfig,
        cache: Optional[ResponseCache] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.cache = cache if cache is not None else ResponseCache()
        self.webhooks = WebhookVerifier(
            config.webhook_secret, tolerance=config.webhook_tolerance
        )
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PikcelAIClient":
        return cls(ClientConfig.from_env(environ))

    async def __aenter__(self) -> "PikcelAIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _build_url(self, path: str) -> str:
        return f"{self.config.api_url}/api/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        # Content-Type is left to aiohttp: JSON for json=, multipart boundary for forms
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
            "X-Client-Name": CLIENT_NAME,
            "X-Client-Version": CLIENT_VERSION,
        }

    async def _exchange(
        self,
        method: str,
        url: str,
        timeout: float,
        json_body: Optional[Any],
        params: Optional[Mapping[str, str]],
        form: Optional[Callable[[], aiohttp.FormData]],
    ) -> _RawResponse:
        session = self._get_session()
        async with session.request(
            method,
            url,
            json=json_body,
            params=params,
            data=form() if form is not None else None,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            body = await response.read()
            return _RawResponse(response.status, response.reason, response.headers, body)

    async def _send_once(
        self,
        method: str,
        url: str,
        timeout: float,
        json_body: Optional[Any],
        params: Optional[Mapping[str, str]],
        form: Optional[Callable[[], aiohttp.FormData]],
        cancel_event: Optional[asyncio.Event],
    ) -> _RawResponse:
        """Performs one attempt, aborting the transport if cancel_event fires"""
        if cancel_event is None:
            return await self._exchange(method, url, timeout, json_body, params, form)
        if cancel_event.is_set():
            raise NetworkError("Request cancelled")

        request_task = asyncio.ensure_future(
            self._exchange(method, url, timeout, json_body, params, form)
        )
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()

        if request_task not in done:
            # let the aborted transport unwind before reporting
            await asyncio.gather(request_task, return_exceptions=True)
            raise NetworkError("Request cancelled")
        return request_task.result()

    @staticmethod
    def _backoff_delay(retry_delay: float, attempt: int) -> float:
        return retry_delay * (2**attempt)

    async def _backoff(
        self, retry_delay: float, attempt: int, cancel_event: Optional[asyncio.Event]
    ) -> None:
        """Waits retry_delay * 2**attempt before the next attempt"""
        delay = self._backoff_delay(retry_delay, attempt)
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), delay)
        except asyncio.TimeoutError:
            return
        raise NetworkError("Request cancelled")

    def _remote_error(self, response: _RawResponse) -> RemoteError:
        try:
            error = json.loads(response.body).get("error") or {}
        except (ValueError, AttributeError):
            error = None

        if isinstance(error, str) and error:
            return RemoteError("API_ERROR", error, response.status)
        if not isinstance(error, dict):
            return RemoteError(
                "UNKNOWN_ERROR",
                response.reason or "Unknown error occurred",
                response.status,
            )
        return RemoteError(
            error.get("code") or "API_ERROR",
            error.get("message") or "An error occurred",
            response.status,
            error.get("details"),
        )

    def _parse_body(self, response_model: Type[M], response: _RawResponse) -> M:
        try:
            return response_model.model_validate(json.loads(response.body))
        except (ValueError, ValidationError) as e:
            raise RemoteError(
                "INVALID_RESPONSE",
                f"Unexpected response from PikcelAI: {e}",
                response.status,
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        response_model: Type[M],
        json_body: Optional[Any] = None,
        params: Optional[Mapping[str, str]] = None,
        form: Optional[Callable[[], aiohttp.FormData]] = None,
        options: Optional[RequestOptions] = None,
    ) -> M:
        """Issues one logical request, retrying transient failures with exponential backoff"""
        options = options or RequestOptions()
        url = self._build_url(path)
        timeout = options.timeout if options.timeout is not None else self.config.timeout
        max_retries = (
            options.retries if options.retries is not None else self.config.max_retries
        )
        retry_delay = (
            options.retry_delay
            if options.retry_delay is not None
            else self.config.retry_delay
        )

        for attempt in range(max_retries + 1):
            self.logger.debug(f"{method} {url} (attempt {attempt + 1}/{max_retries + 1})")
            try:
                response = await self._send_once(
                    method, url, timeout, json_body, params, form, options.cancel_event
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < max_retries:
                    self.logger.warning(f"Transport error on {method} {url}: {e!r}, retrying")
                    await self._backoff(retry_delay, attempt, options.cancel_event)
                    continue
                message = (
                    "Request timeout"
                    if isinstance(e, asyncio.TimeoutError)
                    else "Network error occurred"
                )
                self.logger.error(f"{message} at {url} after {attempt + 1} attempts: {e!r}")
                raise NetworkError(message, e) from e

            if response.status == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                self.logger.warning(f"Rate limited at {url}, retry after {retry_after}s")
                raise RateLimitError(
                    "Rate limit exceeded. Please try again later.", retry_after
                )

            if 200 <= response.status < 300:
                return self._parse_body(response_model, response)

            error = self._remote_error(response)
            if _is_retryable_status(response.status) and attempt < max_retries:
                self.logger.warning(
                    f"HTTP {response.status} at {url}: {error.message}, retrying"
                )
                await self._backoff(retry_delay, attempt, options.cancel_event)
                continue

            self.logger.error(f"HTTP {response.status} at {url}: {error.message}")
            raise error

        raise AssertionError("retry loop exited without a result")

    async def _cached(self, key: str, ttl: float, fetch: Callable[[], Awaitable[T]]) -> T:
        """Serves from cache, joins an identical in-flight request, or starts one"""
        cached = self.cache.get(key)
        if cached is not None:
            self.logger.debug(f"Cache hit: {key}")
            return cached

        pending = self.cache.get_pending(key)
        if pending is not None:
            self.logger.debug(f"Joining in-flight request: {key}")
            return await asyncio.shield(pending)

        async def fetch_and_store() -> T:
            value = await fetch()
            self.cache.set(key, value, ttl)
            return value

        task = asyncio.ensure_future(fetch_and_store())
        self.cache.set_pending(key, task)
        return await asyncio.shield(task)

    async def get_ai_models(self, options: Optional[RequestOptions] = None) -> List[AIModel]:
        async def fetch() -> List[AIModel]:
            response = await self._request(
                "GET", "/ai-models", Envelope[List[AIModel]], options=options
            )
            return response.data

        return await self._cached(MODELS_CACHE_KEY, MODELS_TTL, fetch)

    async def get_templates(self, options: Optional[RequestOptions] = None) -> List[Template]:
        async def fetch() -> List[Template]:
            response = await self._request(
                "GET", "/enterprise/bulk/templates", Envelope[List[Template]], options=options
            )
            return response.data

        return await self._cached(TEMPLATES_CACHE_KEY, TEMPLATES_TTL, fetch)

    async def dispatch_job(
        self,
        params: Union[DispatchJobParams, Mapping[str, Any]],
        options: Optional[RequestOptions] = None,
    ) -> Job:
        params = DispatchJobParams.model_validate(params)
        response = await self._request(
            "POST",
            "/jobs/dispatch",
            Envelope[Job],
            json_body=params.model_dump(mode="json", exclude_none=True),
            options=options,
        )
        self.logger.info(f"Dispatched job {response.data.id} with tool {params.tool_id}")
        return response.data

    async def get_job_status(
        self, job_id: str, options: Optional[RequestOptions] = None
    ) -> Job:
        # never cached, job state is polled
        if job_id in ("", ".", ".."):
            raise ValueError(f"Invalid job id: {job_id!r}")
        path = f"/jobs/{quote(job_id, safe='')}"
        response = await self._request("GET", path, Envelope[Job], options=options)
        return response.data

    async def get_job_history(
        self,
        params: Optional[Union[JobHistoryParams, Mapping[str, Any]]] = None,
        options: Optional[RequestOptions] = None,
    ) -> JobHistoryPage:
        query = JobHistoryParams.model_validate(params or {}).to_query()
        return await self._request(
            "GET", "/jobs", JobHistoryPage, params=query or None, options=options
        )

    async def get_user_profile(self, options: Optional[RequestOptions] = None) -> UserProfile:
        async def fetch() -> UserProfile:
            response = await self._request(
                "GET", "/profiles/me", Envelope[UserProfile], options=options
            )
            return response.data

        return await self._cached(PROFILE_CACHE_KEY, PROFILE_TTL, fetch)

    async def upload_image(
        self,
        file: Union[bytes, bytearray, BinaryIO],
        filename: Optional[str] = None,
        folder: Optional[str] = None,
        content_type: Optional[str] = None,
        options: Optional[RequestOptions] = None,
    ) -> UploadedImage:
        data = bytes(file) if isinstance(file, (bytes, bytearray)) else file.read()
        filename = filename or "upload.jpg"
        content_type = (
            content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        )

        # a FormData can only be serialized once, so every attempt builds its own
        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field("file", data, filename=filename, content_type=content_type)
            if folder:
                form.add_field("folder", folder)
            return form

        response = await self._request(
            "POST", "/upload", Envelope[UploadedImage], form=build_form, options=options
        )
        self.logger.info(f"Uploaded {filename} ({len(data)} bytes) to {response.data.url}")
        return response.data

    async def dispatch_bulk_job(
        self,
        params: Union[BulkJobParams, Mapping[str, Any]],
        options: Optional[RequestOptions] = None,
    ) -> BulkJob:
        params = BulkJobParams.model_validate(params)
        response = await self._request(
            "POST",
            "/enterprise/bulk/dispatch",
            Envelope[BulkJob],
            json_body=params.model_dump(mode="json", exclude_none=True),
            options=options,
        )
        self.logger.info(
            f"Dispatched bulk job {response.data.id} with {response.data.total_images} images"
        )
        return response.data

    async def poll_job_until_complete(
        self,
        job_id: str,
        on_progress: Optional[ProgressCallback] = None,
        config: Optional[PollingConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Job:
        """Polls job status until the job reaches a terminal state"""
        poller = JobPoller(
            self.get_job_status,
            config=config,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        result = await poller.run(job_id)

        if result.state is PollState.timed_out:
            raise PollingTimeoutError(job_id, poller.config.timeout, result.job)
        if result.state is PollState.cancelled:
            raise PollingCancelledError(job_id, result.job)
        return result.job

    def verify_webhook_signature(self, payload: Union[str, bytes], signature: str) -> bool:
        return self.webhooks.verify(payload, signature)

    def construct_webhook_event(
        self, payload: Union[str, bytes], signature: str
    ) -> WebhookPayload:
        return self.webhooks.construct_event(payload, signature)

    def clear_cache(self) -> None:
        self.cache.clear()

    def invalidate_cache(self, key: str) -> None:
        self.cache.delete(key)

    def invalidate_cache_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        return self.cache.invalidate_pattern(pattern)
