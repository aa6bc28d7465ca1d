"""
Summary workers for the tubepool service.

A small fixed pool of workers drains the SummaryRequestQueue in FIFO order.
Each job runs under a timeout so no request stays PROCESSING indefinitely.
"""

import asyncio
import time
from typing import Optional

from shared.logging import get_logger

from .errors import OperationTimeout, TubePoolError
from .jobs import SummaryRequestQueue, SummaryRequest
from .scraper import Summarizer

log = get_logger("tubepool", "workers")


class SummaryWorker:
    """Pulls requests from the queue and runs them through the Summarizer."""

    def __init__(
        self,
        worker_id: int,
        queue: SummaryRequestQueue,
        summarizer: Summarizer,
        timeout_seconds: float = 180.0,
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.summarizer = summarizer
        self.timeout_seconds = timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Track current work
        self._current: Optional[SummaryRequest] = None
        self._current_start_time: Optional[float] = None

        # Request history (circular buffer of last N requests)
        self._request_history: list[dict] = []
        self._max_history = 20

    async def start(self):
        """Start the worker."""
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("tubepool.worker.lifecycle", action="started", worker=self.worker_id)

    async def stop(self):
        """Stop the worker, failing the request it is working on."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        log.info("tubepool.worker.lifecycle", action="stopped", worker=self.worker_id)

    async def _run_loop(self):
        while self._running:
            try:
                request = await self.queue.next_request()
                await self._process(request)
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "tubepool.worker.loop_error", {"worker": self.worker_id})
                await asyncio.sleep(1)

    async def _process(self, request: SummaryRequest):
        """Run one request to a terminal state."""
        request_id = request.request_id
        self._current = request
        self._current_start_time = time.time()
        log.info("tubepool.worker.job_start", worker=self.worker_id, request_id=request_id)

        try:
            summary = await asyncio.wait_for(
                self.summarizer.summarize(request.video_url, request.title),
                timeout=self.timeout_seconds,
            )
            self.queue.complete(request_id, summary)

        except asyncio.TimeoutError:
            timeout = OperationTimeout("summarization", self.timeout_seconds)
            self.queue.fail(request_id, timeout.message, code=timeout.code)

        except TubePoolError as e:
            self.queue.fail(request_id, e.message, code=e.code)

        except asyncio.CancelledError:
            self.queue.fail(request_id, "Cancelled: service shutting down", code="cancelled")
            raise

        except Exception as e:
            log.exception(e, "tubepool.worker.job_error",
                          {"worker": self.worker_id, "request_id": request_id})
            self.queue.fail(request_id, f"{type(e).__name__}: {e}", code="internal_error")

        finally:
            elapsed = time.time() - self._current_start_time
            try:
                outcome = self.queue.status(request_id).status.value
            except TubePoolError:
                outcome = "evicted"
            self._request_history.append({
                "request_id": request_id,
                "video_url": request.video_url,
                "started_at": self._current_start_time,
                "elapsed_seconds": round(elapsed, 2),
                "outcome": outcome,
            })
            if len(self._request_history) > self._max_history:
                self._request_history.pop(0)

            self._current = None
            self._current_start_time = None

    def get_current_work(self) -> Optional[dict]:
        """What this worker is doing right now, or None if idle."""
        if self._current is None:
            return None
        return {
            "request_id": self._current.request_id,
            "video_url": self._current.video_url,
            "title": self._current.title,
            "elapsed_seconds": round(time.time() - self._current_start_time, 1),
        }

    def get_request_history(self, limit: int = 10) -> list[dict]:
        """Most recent requests first."""
        return list(reversed(self._request_history[-limit:]))


class WorkerPool:
    """Fixed-size set of SummaryWorkers sharing one queue."""

    def __init__(
        self,
        queue: SummaryRequestQueue,
        summarizer: Summarizer,
        size: int = 1,
        timeout_seconds: float = 180.0,
    ):
        if size < 1:
            raise ValueError("worker pool size must be at least 1")
        self.queue = queue
        self.workers = [
            SummaryWorker(i + 1, queue, summarizer, timeout_seconds) for i in range(size)
        ]

    @classmethod
    def from_config(cls, queue: SummaryRequestQueue, summarizer: Summarizer, config: dict) -> "WorkerPool":
        queue_config = config.get("queue", {})
        return cls(
            queue,
            summarizer,
            size=queue_config.get("workers", 1),
            timeout_seconds=queue_config.get("job_timeout_seconds", 180.0),
        )

    async def start(self):
        for worker in self.workers:
            await worker.start()

    async def stop(self):
        for worker in self.workers:
            await worker.stop()

    def activity(self, include_history: bool = False, history_limit: int = 5) -> dict:
        result = {}
        for worker in self.workers:
            work = worker.get_current_work()
            entry = {
                "status": "working" if work else "idle",
                "current_work": work,
            }
            if include_history:
                entry["history"] = worker.get_request_history(history_limit)
            result[f"worker-{worker.worker_id}"] = entry
        return result
