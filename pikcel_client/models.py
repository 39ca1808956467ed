import asyncio
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pikcel_client.errors import ConfigurationError

T = TypeVar("T")


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_url: str
    api_key: str
    webhook_secret: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)  # seconds
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)  # seconds
    webhook_tolerance: float = Field(default=300.0, gt=0)  # 5 minutes

    @field_validator("api_url")
    @classmethod
    def _check_api_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("PikcelAI API URL is required")
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"PikcelAI API URL must be an absolute http(s) URL: {value}")
        return value.rstrip("/")

    @field_validator("api_key")
    @classmethod
    def _check_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("PikcelAI API key is required")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """Build a config from PIKCEL_* environment variables"""
        env = os.environ if environ is None else environ

        missing = [
            name for name in ("PIKCEL_API_URL", "PIKCEL_API_KEY") if not env.get(name)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        overrides: Dict[str, Any] = {}
        for name, field in (
            ("PIKCEL_TIMEOUT", "timeout"),
            ("PIKCEL_MAX_RETRIES", "max_retries"),
            ("PIKCEL_RETRY_DELAY", "retry_delay"),
        ):
            if env.get(name):
                overrides[field] = env[name]

        return cls(
            api_url=env["PIKCEL_API_URL"],
            api_key=env["PIKCEL_API_KEY"],
            webhook_secret=env.get("PIKCEL_WEBHOOK_SECRET") or None,
            **overrides,
        )


class RequestOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0)
    retry_delay: Optional[float] = Field(default=None, ge=0)
    cancel_event: Optional[asyncio.Event] = None


class PollingConfig(BaseModel):
    interval: float = Field(default=2.0, ge=0)
    timeout: float = Field(default=300.0, ge=0)  # 5 minutes


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.completed, JobStatus.failed, JobStatus.cancelled}
)


class JobPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class Job(BaseModel):
    id: str
    status: JobStatus
    user_id: Optional[str] = None
    tool_id: Optional[str] = None
    tool_name: Optional[str] = None
    priority: Optional[JobPriority] = None
    input_image_url: Optional[str] = None
    output_image_url: Optional[str] = None
    error_message: Optional[str] = None
    credits_used: float = 0
    processing_time_ms: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AIModel(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    credits_required: float = 0
    base_price: float = 0
    default_parameters: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Template(BaseModel):
    id: str
    name: str
    tool_id: str
    description: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    preview_url: Optional[str] = None
    is_public: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserSubscription(BaseModel):
    plan: str
    status: str
    credits_included: float = 0
    renewal_date: Optional[datetime] = None


class UserProfile(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    credits_balance: float
    subscription: Optional[UserSubscription] = None
    total_jobs_processed: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadedImage(BaseModel):
    url: str
    path: str
    size: int
    mime_type: str
    uploaded_at: Optional[datetime] = None


class BulkJob(BaseModel):
    id: str
    status: JobStatus
    total_images: int
    completed: int = 0
    failed: int = 0
    jobs: List[Job] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DispatchJobParams(BaseModel):
    tool_id: str
    input_image_url: str
    parameters: Optional[Dict[str, Any]] = None
    template_id: Optional[str] = None
    priority: Optional[JobPriority] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class BulkInputImage(BaseModel):
    url: str
    metadata: Optional[Dict[str, Any]] = None


class BulkJobParams(BaseModel):
    tool_id: str
    input_images: List[BulkInputImage] = Field(min_length=1)
    parameters: Optional[Dict[str, Any]] = None
    template_id: Optional[str] = None
    priority: Optional[JobPriority] = None
    webhook_url: Optional[str] = None


class JobHistoryParams(BaseModel):
    limit: Optional[int] = Field(default=None, gt=0)
    offset: Optional[int] = Field(default=None, ge=0)
    status: Optional[JobStatus] = None
    tool_id: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None

    def to_query(self) -> Dict[str, str]:
        return {
            key: str(value)
            for key, value in self.model_dump(mode="json", exclude_none=True).items()
        }


class Envelope(BaseModel, Generic[T]):
    """Standard `{success, data}` wrapper of every PikcelAI response"""

    success: bool = True
    data: T
    count: Optional[int] = None
    message: Optional[str] = None


class JobHistoryPage(BaseModel):
    success: bool = True
    data: List[Job]
    count: int = 0
    total: int = 0
    has_more: bool = False


class WebhookEvent(str, Enum):
    job_started = "job.started"
    job_completed = "job.completed"
    job_failed = "job.failed"


class WebhookPayload(BaseModel):
    event: WebhookEvent
    job_id: str
    job: Job
    timestamp: datetime
    signature: Optional[str] = None


class PollState(str, Enum):
    polling = "polling"
    terminal = "terminal"
    timed_out = "timed_out"
    cancelled = "cancelled"


class PollResult(BaseModel):
    state: PollState
    job: Optional[Job] = None
    attempts: int = 0
    elapsed: float = 0.0
