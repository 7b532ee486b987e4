from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.services.media_types import MediaResolutionError, ResolutionRequest
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("media_resolver.queue")
_POLL_INTERVAL_SECONDS = 0.2


@dataclass(frozen=True)
class _PendingMarker:
    token: str
    expires_at: float


@dataclass(frozen=True)
class _QueuedJob:
    request: ResolutionRequest
    token: str


class ResolutionWorkQueue:
    """
    In-process background resolution with duplicate suppression per cache key.

    A key stays pending from `enqueue` until its job finishes, whatever the outcome.
    Markers also carry an expiry so a job that never reports back cannot block the
    key forever. The queue publishes nothing itself; the resolver's cache write is
    the only result channel.
    """

    def __init__(
        self,
        resolve: Callable[[ResolutionRequest], object],
        *,
        worker_count: int = 2,
        marker_ttl_seconds: float = 300.0,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolve = resolve
        self._worker_count = max(1, worker_count)
        self._marker_ttl_seconds = max(0.0, marker_ttl_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._jobs: queue.Queue[_QueuedJob] = queue.Queue()
        self._pending: dict[str, _PendingMarker] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return

        self._stop_event.clear()
        self._threads = []
        for index in range(self._worker_count):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"media-resolver-queue-{index}",
            )
            thread.daemon = True
            thread.start()
            self._threads.append(thread)

    def stop(self, *, timeout_seconds: float = 3.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout_seconds)
        self._threads = []

        # Jobs that never started must not keep their keys pending.
        with self._idle:
            while True:
                try:
                    job = self._jobs.get_nowait()
                except queue.Empty:
                    break
                self._clear_marker_locked(job)
                self._jobs.task_done()
            self._idle.notify_all()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def enqueue(self, request: ResolutionRequest) -> bool:
        """Queue a resolution; returns False when the key is already pending."""
        cache_key = request.cache_key
        now = self._clock()
        with self._lock:
            marker = self._pending.get(cache_key)
            if marker is not None and marker.expires_at > now:
                return False
            token = uuid4().hex
            self._pending[cache_key] = _PendingMarker(
                token=token,
                expires_at=now + self._marker_ttl_seconds,
            )
            self._jobs.put(_QueuedJob(request=request, token=token))

        self._telemetry.emit(
            "media.queue.enqueued",
            kind=request.kind,
            quality_tier=request.quality_tier,
        )
        return True

    def is_pending(self, cache_key: str) -> bool:
        with self._lock:
            marker = self._pending.get(cache_key)
            return marker is not None and marker.expires_at > self._clock()

    def pending_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for marker in self._pending.values() if marker.expires_at > now)

    def wait_until_idle(self, timeout_seconds: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout_seconds)

    def _run_worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._jobs.get(timeout=_POLL_INTERVAL_SECONDS)
            except queue.Empty:
                continue
            try:
                self._run_job(job)
            finally:
                with self._idle:
                    self._clear_marker_locked(job)
                    self._idle.notify_all()
                self._jobs.task_done()

    def _run_job(self, job: _QueuedJob) -> None:
        request = job.request
        context_tokens = bind_contextvars(queue_job_id=job.token, resolution_key=request.cache_key)
        started_at = time.perf_counter()
        try:
            self._resolve(request)
        except MediaResolutionError as exc:
            # The resolver already cached the outcome (or deliberately did not).
            LOGGER.info(
                "queued resolution finished without media key=%s error=%s",
                request.cache_key,
                type(exc).__name__,
            )
            outcome = "failed"
        except Exception:
            LOGGER.exception("queued resolution crashed key=%s", request.cache_key)
            outcome = "crashed"
        else:
            outcome = "resolved"
        finally:
            reset_contextvars(**context_tokens)

        self._telemetry.emit(
            "media.queue.job.finish",
            kind=request.kind,
            quality_tier=request.quality_tier,
            outcome=outcome,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )

    def _clear_marker_locked(self, job: _QueuedJob) -> None:
        cache_key = job.request.cache_key
        marker = self._pending.get(cache_key)
        if marker is not None and marker.token == job.token:
            del self._pending[cache_key]
