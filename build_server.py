import random
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger


class _Build:
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        self.start_time = datetime.now()


class BuildServer:
    """Stand-in for the build backend: run-now and status routes for one resource."""

    def __init__(
        self,
        completion_time: float = 10.0,
        queue_time: float = 0.0,
        error_rate: float = 0.0,
        fail_build: bool = False,
        sync: bool = False,
        run_status_code: Optional[int] = None,
        run_response: Optional[Tuple[int, str]] = None,
        resource: str = "segments",
    ):
        self.completion_time = completion_time
        self.queue_time = queue_time
        self.error_rate = error_rate
        self.fail_build = fail_build
        self.sync = sync
        self.run_status_code = run_status_code
        self.run_response = run_response
        self.builds: Dict[str, _Build] = {}
        self.run_requests: List[dict] = []
        self.status_requests: Counter = Counter()
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_post(f"/{resource}/{{id}}/builds/run-now", self.handle_run_now)
        self.app.router.add_get(f"/{resource}/{{id}}/builds/status", self.handle_status)
        self.logger = logger

    async def handle_run_now(self, request):
        entity_id = request.match_info["id"]
        try:
            body = await request.json()
        except ValueError:
            body = {}
        self.run_requests.append(body)

        if self.run_status_code is not None:
            self.logger.info(f"Rejecting build for {entity_id} with {self.run_status_code}")
            return web.json_response(
                {"error": "build rejected"}, status=self.run_status_code
            )

        if self.run_response is not None:
            status, text = self.run_response
            self.logger.info(f"Answering build for {entity_id} with raw {status} body")
            return web.Response(status=status, text=text, content_type="application/json")

        if self.sync:
            self.logger.info(f"Built {entity_id} synchronously")
            if self.fail_build:
                return web.json_response({"mode": "sync", "status": "error", "error": "build failed"})
            return web.json_response(
                {"mode": "sync", "status": "ok", "result": {"new_count": 42, "delta": 0}}
            )

        build = _Build(uuid.uuid4().hex)
        self.builds[entity_id] = build
        self.logger.info(f"Queued build {build.entry_id} for {entity_id}")
        return web.json_response({"entryId": build.entry_id}, status=202)

    async def handle_status(self, request):
        entity_id = request.match_info["id"]
        self.status_requests[entity_id] += 1

        if random.random() < self.error_rate:
            self.logger.info("Returning transient server error")
            return web.json_response({"error": "unavailable"}, status=503)

        build = self.builds.get(entity_id)
        if build is None:
            return web.json_response({"status": None})

        elapsed = (datetime.now() - build.start_time).total_seconds()
        payload = {
            "entryId": build.entry_id,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }

        if elapsed >= self.completion_time:
            if self.fail_build:
                self.logger.info("Returning error status")
                payload.update(status="error", message="build failed")
            else:
                self.logger.info("Returning ok status")
                payload.update(status="ok")
        elif elapsed < self.queue_time:
            payload.update(status="queued", progress=0)
        else:
            progress = int(100 * elapsed / self.completion_time) if self.completion_time else 0
            self.logger.info(f"Returning running status (elapsed: {elapsed:.1f}s)")
            payload.update(status="running", progress=progress)

        return web.json_response(payload)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
