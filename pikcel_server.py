import asyncio
import random
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from aiohttp import web
from aiohttp.web_request import FileField
from loguru import logger


@dataclass
class MockResponse:
    status: int = 200
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    delay: float = 0.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PikcelServer:
    """Local stand-in for the PikcelAI API.

    Every route answers with realistic data by default. Tests can queue
    scripted responses per route with `script()` and read per-route call
    counts from `calls` and request details from `requests`.
    """

    def __init__(self, completion_time: float = 10.0, error_rate: float = 0.0):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.delay = 0.0
        self.calls: Counter = Counter()
        self.requests: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self._scripts: Dict[str, Deque[MockResponse]] = defaultdict(deque)
        self._runner: Optional[web.AppRunner] = None
        self.logger = logger

        self.app = web.Application()
        self.app.router.add_get("/api/ai-models", self._route("models", self.handle_models))
        self.app.router.add_get(
            "/api/enterprise/bulk/templates", self._route("templates", self.handle_templates)
        )
        self.app.router.add_post(
            "/api/jobs/dispatch", self._route("dispatch", self.handle_dispatch)
        )
        self.app.router.add_get("/api/jobs", self._route("history", self.handle_history))
        self.app.router.add_get("/api/jobs/{job_id}", self._route("status", self.handle_status))
        self.app.router.add_get("/api/profiles/me", self._route("profile", self.handle_profile))
        self.app.router.add_post("/api/upload", self._route("upload", self.handle_upload))
        self.app.router.add_post(
            "/api/enterprise/bulk/dispatch", self._route("bulk", self.handle_bulk)
        )

    def script(self, route: str, *responses: MockResponse) -> None:
        """Queues responses served, in order, before the default handler"""
        self._scripts[route].extend(responses)

    def _route(self, name: str, handler):
        async def wrapped(request: web.Request) -> web.StreamResponse:
            self.calls[name] += 1
            record = {
                "headers": dict(request.headers),
                "query": dict(request.query),
                "match": dict(request.match_info),
            }
            if request.content_type == "application/json" and request.can_read_body:
                record["json"] = await request.json()
            self.requests[name].append(record)

            if self.delay:
                await asyncio.sleep(self.delay)

            if self._scripts[name]:
                scripted = self._scripts[name].popleft()
                if scripted.delay:
                    await asyncio.sleep(scripted.delay)
                self.logger.info(f"{name}: scripted HTTP {scripted.status}")
                if scripted.body is None:
                    return web.Response(status=scripted.status, headers=scripted.headers)
                if isinstance(scripted.body, str):
                    scripted.body = scripted.body.encode("utf-8")
                if isinstance(scripted.body, bytes):
                    return web.Response(
                        status=scripted.status, body=scripted.body, headers=scripted.headers
                    )
                return web.json_response(
                    scripted.body, status=scripted.status, headers=scripted.headers
                )

            return await handler(request)

        return wrapped

    def _new_job(self, tool_id: str, input_image_url: str, **extra: Any) -> Dict[str, Any]:
        job = {
            "id": f"job-{uuid.uuid4().hex[:12]}",
            "user_id": "user-1",
            "tool_id": tool_id,
            "status": "pending",
            "priority": extra.get("priority") or "normal",
            "input_image_url": input_image_url,
            "parameters": extra.get("parameters") or {},
            "metadata": extra.get("metadata") or {},
            "credits_used": 0,
            "created_at": _now(),
            "updated_at": _now(),
            "_dispatched": datetime.now(timezone.utc),
        }
        self.jobs[job["id"]] = job
        return job

    def _public(self, job: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in job.items() if not key.startswith("_")}

    def _advance(self, job: Dict[str, Any]) -> None:
        if job["status"] in ("completed", "failed", "cancelled"):
            return

        elapsed = (datetime.now(timezone.utc) - job["_dispatched"]).total_seconds()
        if elapsed >= self.completion_time:
            if random.random() < self.error_rate:
                job["status"] = "failed"
                job["error_message"] = "Processing failed"
            else:
                job["status"] = "completed"
                job["output_image_url"] = f"https://cdn.pikcel.test/{job['id']}.png"
                job["credits_used"] = 1
            job["completed_at"] = _now()
        elif elapsed >= self.completion_time / 4:
            job["status"] = "processing"
            job.setdefault("started_at", _now())
        job["updated_at"] = _now()

    async def handle_models(self, request: web.Request) -> web.Response:
        models = [
            {
                "id": "background-removal",
                "name": "Background Removal",
                "description": "Remove image backgrounds",
                "category": "editing",
                "credits_required": 1,
                "base_price": 0.05,
                "is_active": True,
            },
            {
                "id": "upscale",
                "name": "Upscale",
                "description": "Upscale images 4x",
                "category": "enhancement",
                "credits_required": 2,
                "base_price": 0.1,
                "is_active": True,
            },
        ]
        return web.json_response({"success": True, "data": models, "count": len(models)})

    async def handle_templates(self, request: web.Request) -> web.Response:
        templates = [
            {
                "id": "tpl-white-bg",
                "name": "White background",
                "tool_id": "background-removal",
                "parameters": {"background": "#ffffff"},
                "is_public": True,
                "created_by": "system",
            }
        ]
        return web.json_response(
            {"success": True, "data": templates, "count": len(templates)}
        )

    async def handle_dispatch(self, request: web.Request) -> web.Response:
        body = await request.json()
        if not body.get("tool_id") or not body.get("input_image_url"):
            return web.json_response(
                {
                    "success": False,
                    "error": {
                        "code": "VALIDATION_ERROR",
                        "message": "tool_id and input_image_url are required",
                    },
                },
                status=400,
            )
        job = self._new_job(**body)
        self.logger.info(f"Dispatched {job['id']} ({job['tool_id']})")
        return web.json_response({"success": True, "data": self._public(job)}, status=201)

    async def handle_status(self, request: web.Request) -> web.Response:
        job = self.jobs.get(request.match_info["job_id"])
        if job is None:
            return web.json_response(
                {"success": False, "error": {"code": "NOT_FOUND", "message": "Job not found"}},
                status=404,
            )
        self._advance(job)
        self.logger.info(f"Returning {job['status']} status for {job['id']}")
        return web.json_response({"success": True, "data": self._public(job)})

    async def handle_history(self, request: web.Request) -> web.Response:
        jobs = [self._public(job) for job in self.jobs.values()]
        if "status" in request.query:
            jobs = [job for job in jobs if job["status"] == request.query["status"]]
        if "tool_id" in request.query:
            jobs = [job for job in jobs if job["tool_id"] == request.query["tool_id"]]

        offset = int(request.query.get("offset", 0))
        limit = int(request.query.get("limit", 20))
        page = jobs[offset : offset + limit]
        return web.json_response(
            {
                "success": True,
                "data": page,
                "count": len(page),
                "total": len(jobs),
                "has_more": offset + limit < len(jobs),
            }
        )

    async def handle_profile(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "success": True,
                "data": {
                    "id": "user-1",
                    "email": "merchant@example.com",
                    "full_name": "Test Merchant",
                    "credits_balance": 120,
                    "subscription": {
                        "plan": "starter",
                        "status": "active",
                        "credits_included": 200,
                    },
                    "total_jobs_processed": len(self.jobs),
                },
            }
        )

    async def handle_upload(self, request: web.Request) -> web.Response:
        form = await request.post()
        upload = form.get("file")
        if not isinstance(upload, FileField):
            return web.json_response(
                {"success": False, "error": {"code": "NO_FILE", "message": "No file provided"}},
                status=400,
            )
        content = upload.file.read()
        folder = form.get("folder") or "uploads"
        path = f"{folder}/{upload.filename}"
        self.requests["upload"][-1].update(
            {"filename": upload.filename, "size": len(content), "folder": folder}
        )
        return web.json_response(
            {
                "success": True,
                "data": {
                    "url": f"https://cdn.pikcel.test/{path}",
                    "path": path,
                    "size": len(content),
                    "mime_type": upload.content_type,
                    "uploaded_at": _now(),
                },
            }
        )

    async def handle_bulk(self, request: web.Request) -> web.Response:
        body = await request.json()
        jobs = [
            self._new_job(
                body["tool_id"],
                image["url"],
                parameters=body.get("parameters"),
                metadata=image.get("metadata"),
                priority=body.get("priority"),
            )
            for image in body.get("input_images", [])
        ]
        return web.json_response(
            {
                "success": True,
                "data": {
                    "id": f"bulk-{uuid.uuid4().hex[:12]}",
                    "status": "pending",
                    "total_images": len(jobs),
                    "completed": 0,
                    "failed": 0,
                    "jobs": [self._public(job) for job in jobs],
                    "created_at": _now(),
                    "updated_at": _now(),
                },
            },
            status=201,
        )

    async def start(self, port: int = 8080):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
