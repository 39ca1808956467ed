import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from pikcel_client.models import TERMINAL_STATUSES, Job, JobStatus

T = TypeVar("T")
R = TypeVar("R")

SUPPORTED_IMAGE_FORMATS = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
)

MAX_IMAGE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB

_STATUS_LABELS = {
    JobStatus.pending: "Pending",
    JobStatus.processing: "Processing",
    JobStatus.completed: "Completed",
    JobStatus.failed: "Failed",
    JobStatus.cancelled: "Cancelled",
}


def is_job_final(status: JobStatus) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def is_job_processing(status: JobStatus) -> bool:
    return JobStatus(status) in (JobStatus.pending, JobStatus.processing)


def is_job_successful(job: Job) -> bool:
    return job.status is JobStatus.completed and bool(job.output_image_url)


def job_status_label(status: JobStatus) -> str:
    return _STATUS_LABELS.get(JobStatus(status), "Unknown")


def validate_image_upload(size: int, mime_type: str) -> Optional[str]:
    """Returns a user-facing reason the image cannot be uploaded, or None"""
    if mime_type not in SUPPORTED_IMAGE_FORMATS:
        return f"Unsupported format. Supported: {', '.join(SUPPORTED_IMAGE_FORMATS)}"
    if size > MAX_IMAGE_SIZE_BYTES:
        return f"File too large. Maximum size: {MAX_IMAGE_SIZE_BYTES // (1024 * 1024)}MB"
    return None


def batch_items(items: Sequence[T], batch_size: int) -> List[List[T]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


async def process_in_parallel(
    items: Sequence[T],
    worker: Callable[[T, int], Awaitable[R]],
    concurrency: int = 3,
) -> List[R]:
    """Runs worker over items, at most `concurrency` at a time, preserving order"""
    results: List[R] = []
    for batch in batch_items(items, concurrency):
        offset = len(results)
        results.extend(
            await asyncio.gather(
                *[worker(item, offset + i) for i, item in enumerate(batch)]
            )
        )
    return results
