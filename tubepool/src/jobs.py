"""
Summary request queue for the tubepool service.

Manages summary requests through their lifecycle:
- Submission (with per-video deduplication)
- Processing (FIFO hand-off to the worker pool)
- Completion or failure
- Retention (age and count bounded eviction of finished requests)

Requests live in memory only.
"""

import asyncio
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict, replace
from typing import Callable, Optional

from shared.logging import get_logger

from .errors import InvalidRequest, RequestNotFound
from .models import RequestStatus

log = get_logger("tubepool", "jobs")


@dataclass
class SummaryRequest:
    """Represents a single summary request."""

    request_id: str
    video_url: str
    title: Optional[str] = None

    # State
    status: RequestStatus = RequestStatus.PENDING
    queue_position: Optional[int] = None

    # Outcome
    result: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    # Timestamps
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def snapshot(self) -> "SummaryRequest":
        """Detached copy handed to callers."""
        return replace(self)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


class SummaryRequestQueue:
    """
    Thread-safe store and FIFO channel for summary requests.

    Invariants:
    - At most one active (PENDING/PROCESSING) request per video URL
    - Status only moves forward; COMPLETED and FAILED are final
    - Only finished requests are ever evicted
    """

    def __init__(
        self,
        reuse_completed: bool = True,
        max_age_seconds: float = 3600.0,
        max_completed: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the queue.

        Args:
            reuse_completed: Answer a submission with a retained COMPLETED result
                for the same URL instead of summarizing again
            max_age_seconds: Finished requests older than this are evicted
            max_completed: At most this many finished requests are retained
            clock: Time source (seconds since epoch)
        """
        self._lock = threading.RLock()
        self._requests: dict[str, SummaryRequest] = {}
        self._pending: deque[str] = deque()
        self._processing: list[str] = []
        self._active_by_url: dict[str, str] = {}  # url -> active request_id
        self._completed_by_url: dict[str, str] = {}  # url -> latest completed request_id
        self._channel: asyncio.Queue[str] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None  # loop the workers wait on

        self.reuse_completed = reuse_completed
        self.max_age_seconds = max_age_seconds
        self.max_completed = max_completed
        self._clock = clock

        # Lifetime totals, unaffected by eviction
        self._completed_total = 0
        self._failed_total = 0
        self._turnaround_total = 0.0

    @classmethod
    def from_config(cls, config: dict) -> "SummaryRequestQueue":
        queue_config = config.get("queue", {})
        retention = queue_config.get("retention", {})
        return cls(
            reuse_completed=queue_config.get("reuse_completed", True),
            max_age_seconds=retention.get("max_age_seconds", 3600.0),
            max_completed=retention.get("max_completed", 100),
        )

    def submit(
        self,
        video_url: str,
        title: Optional[str] = None,
        force_regenerate: bool = False,
    ) -> SummaryRequest:
        """
        Submit a summary request.

        Returns the existing active request for the URL if there is one, a
        retained completed request if reuse is allowed, or a new PENDING
        request queued for the workers.
        """
        url = (video_url or "").strip()
        if not url:
            raise InvalidRequest("video_url is required")

        with self._lock:
            self.evict()

            active_id = self._active_by_url.get(url)
            if active_id is not None:
                existing = self._requests[active_id]
                log.info("tubepool.jobs.duplicate",
                         request_id=active_id,
                         video_url=url,
                         status=existing.status.value)
                return existing.snapshot()

            if self.reuse_completed and not force_regenerate:
                done_id = self._completed_by_url.get(url)
                done = self._requests.get(done_id) if done_id else None
                if done is not None and done.status == RequestStatus.COMPLETED:
                    log.info("tubepool.jobs.cache_hit", request_id=done_id, video_url=url)
                    return done.snapshot()

            request = SummaryRequest(
                request_id=str(uuid.uuid4()),
                video_url=url,
                title=title,
                submitted_at=self._clock(),
            )
            self._requests[request.request_id] = request
            self._pending.append(request.request_id)
            self._active_by_url[url] = request.request_id
            self._update_queue_positions()
            self._notify(request.request_id)

            log.info("tubepool.jobs.submitted",
                     request_id=request.request_id,
                     video_url=url,
                     queue_position=request.queue_position,
                     force_regenerate=force_regenerate)

            return request.snapshot()

    def status(self, request_id: str) -> SummaryRequest:
        """Current snapshot of a request; raises RequestNotFound if unknown."""
        with self._lock:
            self.evict()
            request = self._requests.get(request_id)
            if request is None:
                raise RequestNotFound(request_id)
            return request.snapshot()

    async def next_request(self) -> SummaryRequest:
        """
        Wait for the next PENDING request and mark it PROCESSING.

        Used by workers; ids whose request is gone or no longer pending are skipped.
        """
        self._loop = asyncio.get_running_loop()
        while True:
            request_id = await self._channel.get()
            request = self._start_processing(request_id)
            if request is not None:
                return request

    def complete(self, request_id: str, result: str) -> bool:
        """Mark a processing request COMPLETED with its summary."""
        with self._lock:
            request = self._finish(request_id, RequestStatus.COMPLETED)
            if request is None:
                return False

            request.result = result
            self._completed_by_url[request.video_url] = request_id
            self._completed_total += 1
            self._turnaround_total += request.completed_at - request.submitted_at

            log.info("tubepool.jobs.completed",
                     request_id=request_id,
                     video_url=request.video_url,
                     result_length=len(result),
                     turnaround_seconds=round(request.completed_at - request.submitted_at, 2))

            self.evict()
            return True

    def fail(self, request_id: str, error: str, code: str = "summarize_failed") -> bool:
        """Mark a processing request FAILED. No retry; callers resubmit."""
        with self._lock:
            request = self._finish(request_id, RequestStatus.FAILED)
            if request is None:
                return False

            request.error = error
            request.error_code = code
            self._failed_total += 1

            log.error("tubepool.jobs.failed",
                      request_id=request_id,
                      video_url=request.video_url,
                      error_code=code,
                      error=error)

            self.evict()
            return True

    def evict(self) -> int:
        """Drop finished requests past the age limit, then the oldest over the count limit."""
        with self._lock:
            now = self._clock()
            finished = sorted(
                (r for r in self._requests.values() if r.status.is_terminal),
                key=lambda r: r.completed_at or r.submitted_at,
            )

            expired = [
                r for r in finished
                if r.completed_at is not None and now - r.completed_at > self.max_age_seconds
            ]
            expired_ids = {r.request_id for r in expired}
            kept = [r for r in finished if r.request_id not in expired_ids]
            overflow = kept[:max(0, len(kept) - self.max_completed)]

            removed = 0
            for request in expired + overflow:
                if self._remove(request):
                    removed += 1

            if removed:
                log.info("tubepool.jobs.evicted",
                         removed=removed,
                         expired=len(expired),
                         overflow=len(overflow))
            return removed

    def stats(self) -> dict:
        """Request counts by status, queue depth and average turnaround."""
        with self._lock:
            counts = {status.value.lower(): 0 for status in RequestStatus}
            for request in self._requests.values():
                counts[request.status.value.lower()] += 1

            return {
                **counts,
                "total": len(self._requests),
                "queue_depth": len(self._pending),
                "completed_total": self._completed_total,
                "failed_total": self._failed_total,
                "average_turnaround_seconds": (
                    round(self._turnaround_total / self._completed_total, 2)
                    if self._completed_total else None
                ),
            }

    @property
    def depth(self) -> int:
        """Number of PENDING requests."""
        with self._lock:
            return len(self._pending)

    # --- internals ---

    def _notify(self, request_id: str):
        """Hand a new id to the workers, from the loop thread or any other thread."""
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        loop = self._loop
        if loop is None or loop is current or loop.is_closed():
            self._channel.put_nowait(request_id)
        else:
            # asyncio.Queue is not thread-safe; wake waiters on their own loop
            loop.call_soon_threadsafe(self._channel.put_nowait, request_id)

    def _start_processing(self, request_id: str) -> Optional[SummaryRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != RequestStatus.PENDING:
                return None

            request.status = RequestStatus.PROCESSING
            request.started_at = self._clock()
            self._pending.remove(request_id)
            self._processing.append(request_id)
            self._update_queue_positions()

            log.info("tubepool.jobs.processing",
                     request_id=request_id,
                     video_url=request.video_url,
                     waited_seconds=round(request.started_at - request.submitted_at, 2))
            return request.snapshot()

    def _finish(self, request_id: str, status: RequestStatus) -> Optional[SummaryRequest]:
        request = self._requests.get(request_id)
        if request is None:
            log.warning("tubepool.jobs.finish_unknown", request_id=request_id, status=status.value)
            return None
        if request.status != RequestStatus.PROCESSING:
            log.warning("tubepool.jobs.invalid_transition",
                        request_id=request_id,
                        current=request.status.value,
                        requested=status.value)
            return None

        request.status = status
        request.completed_at = self._clock()
        request.queue_position = None
        self._processing.remove(request_id)
        if self._active_by_url.get(request.video_url) == request_id:
            del self._active_by_url[request.video_url]
        self._update_queue_positions()
        return request

    def _remove(self, request: SummaryRequest) -> bool:
        if not request.status.is_terminal:
            return False
        self._requests.pop(request.request_id, None)
        if self._completed_by_url.get(request.video_url) == request.request_id:
            del self._completed_by_url[request.video_url]
        return True

    def _update_queue_positions(self):
        """Position = number of active requests ahead (processing ones included)."""
        ahead = len(self._processing)
        for request_id in self._processing:
            self._requests[request_id].queue_position = 0
        for i, request_id in enumerate(self._pending):
            self._requests[request_id].queue_position = ahead + i
