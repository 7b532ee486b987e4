from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.attempt_ledger_repository import AttemptLedgerRepository
from backend.app.repositories.common import utc_now
from backend.app.repositories.resolution_cache_repository import ResolutionCacheRepository
from backend.app.services.media_types import (
    AllProvidersExhaustedError,
    AttemptFailure,
    AttemptRecord,
    FailureKind,
    InvalidMediaRequestError,
    MediaResolutionResult,
    ResolutionRequest,
    ResolutionTimeoutError,
    ResolvedMedia,
    is_valid_video_id,
)
from backend.app.services.providers.base import ProviderAdapter, ProviderError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("media_resolver.resolver")
DEFAULT_MAX_STUCK_CALLS = 4


@dataclass(frozen=True)
class BackoffPolicy:
    """Linear backoff between attempts on the same provider: `base * attempt`, attempt 1-indexed."""

    base_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.base_seconds) * max(1, attempt)


class _AttemptCall:
    """One adapter call on its own daemon thread; the waiting side may walk away from it."""

    def __init__(
        self,
        target: Callable[[], ResolvedMedia],
        *,
        name: str,
        on_abandoned_exit: Callable[[], None],
    ) -> None:
        self.result: ResolvedMedia | None = None
        self.error: Exception | None = None
        self._target = target
        self._on_abandoned_exit = on_abandoned_exit
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._abandoned = False
        self._thread = threading.Thread(target=self._run, name=name)
        self._thread.daemon = True

    def start(self) -> None:
        self._thread.start()

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)

    def abandon(self) -> bool:
        """Detach from a call still running; False when it finished in the meantime."""
        with self._lock:
            if self._done.is_set():
                return False
            self._abandoned = True
            return True

    def _run(self) -> None:
        try:
            self.result = self._target()
        except Exception as exc:
            self.error = exc
        finally:
            with self._lock:
                self._done.set()
                abandoned = self._abandoned
            if abandoned:
                self._on_abandoned_exit()


class FallbackResolver:
    """
    Walks the provider chain for one request until the first success.

    Providers are tried strictly in the given order, each up to `retry_budget` times.
    Every attempt lands in the ledger before the walk continues; the final outcome
    lands in the result cache. A caller deadline bounds the whole walk, including
    backoff waits, and an expired deadline never produces a cache entry.

    Each attempt runs on its own thread and its timeout starts with the call. A call
    that overruns is abandoned; once a provider has `max_stuck_calls_per_provider`
    abandoned calls still running it is skipped until some of them exit.
    """

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        cache_repository: ResolutionCacheRepository,
        attempt_ledger: AttemptLedgerRepository,
        *,
        retry_budget: int = 2,
        backoff: BackoffPolicy | None = None,
        success_ttl_seconds: int = 6 * 3600,
        failure_ttl_seconds: int = 120,
        default_deadline_seconds: float = 45.0,
        telemetry: TelemetryClient | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_stuck_calls_per_provider: int = DEFAULT_MAX_STUCK_CALLS,
    ) -> None:
        self._adapters = tuple(adapters)
        self._cache = cache_repository
        self._ledger = attempt_ledger
        self._retry_budget = max(1, retry_budget)
        self._backoff = backoff if backoff is not None else BackoffPolicy()
        self._success_ttl_seconds = success_ttl_seconds
        self._failure_ttl_seconds = failure_ttl_seconds
        self._default_deadline_seconds = default_deadline_seconds
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._clock = clock
        self._max_stuck_calls = max(1, max_stuck_calls_per_provider)
        self._stuck_lock = threading.Lock()
        self._stuck_calls: dict[str, int] = {}

    @property
    def provider_names(self) -> list[str]:
        return [adapter.name for adapter in self._adapters]

    def stuck_calls(self, provider: str) -> int:
        with self._stuck_lock:
            return self._stuck_calls.get(provider, 0)

    def resolve(
        self,
        request: ResolutionRequest,
        *,
        deadline_seconds: float | None = None,
    ) -> ResolvedMedia:
        return self.resolve_with_metadata(request, deadline_seconds=deadline_seconds).media

    def resolve_with_metadata(
        self,
        request: ResolutionRequest,
        *,
        deadline_seconds: float | None = None,
    ) -> MediaResolutionResult:
        if not is_valid_video_id(request.video_id):
            raise InvalidMediaRequestError("Video id must be an 11-character token.")

        cache_key = request.cache_key
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._telemetry.emit(
                "media.resolve.cache_hit",
                kind=request.kind,
                quality_tier=request.quality_tier,
                cache_status=cached.status,
            )
            if cached.resolved and cached.media is not None:
                return MediaResolutionResult(media=cached.media, cache_hit=True, attempts=0)
            raise AllProvidersExhaustedError(cache_key=cache_key, from_cache=True)

        budget_seconds = (
            self._default_deadline_seconds if deadline_seconds is None else deadline_seconds
        )
        deadline_at = self._clock() + max(0.0, budget_seconds)
        context_tokens = bind_contextvars(resolution_key=cache_key)
        try:
            with self._telemetry.span(
                "media.resolve",
                kind=request.kind,
                quality_tier=request.quality_tier,
            ) as finish_attributes:
                media, attempts = self._walk_chain(request, deadline_at)
                finish_attributes["attempts"] = attempts
                finish_attributes["provider"] = media.source_provider
        finally:
            reset_contextvars(**context_tokens)
        return MediaResolutionResult(media=media, cache_hit=False, attempts=attempts)

    def close(self) -> None:
        self._cancel_event.set()

    def _walk_chain(
        self,
        request: ResolutionRequest,
        deadline_at: float,
    ) -> tuple[ResolvedMedia, int]:
        attempts = 0
        last_failures: dict[str, AttemptFailure] = {}
        # Either flag means the chain was not walked in full, so no failure gets cached.
        skipped_saturated = False
        cut_by_deadline = False
        for adapter in self._adapters:
            for attempt_number in range(1, self._retry_budget + 1):
                if attempt_number > 1 and not self._wait_backoff(
                    request, attempt_number - 1, deadline_at
                ):
                    cut_by_deadline = True
                    break

                if deadline_at - self._clock() <= 0:
                    raise self._deadline_error(request, attempts)

                if self.stuck_calls(adapter.name) >= self._max_stuck_calls:
                    LOGGER.warning(
                        "provider skipped key=%s provider=%s stuck_calls=%s",
                        request.cache_key,
                        adapter.name,
                        self._max_stuck_calls,
                    )
                    skipped_saturated = True
                    break

                outcome, deadline_hit = self._attempt(adapter, request, attempt_number, deadline_at)
                attempts += 1

                if isinstance(outcome, ResolvedMedia):
                    self._cache.put_resolved(
                        request=request,
                        media=outcome,
                        ttl_seconds=self._success_ttl_seconds,
                        attempt_count=attempts,
                    )
                    LOGGER.info(
                        "media resolved key=%s provider=%s attempts=%s",
                        request.cache_key,
                        adapter.name,
                        attempts,
                    )
                    return outcome, attempts

                if deadline_hit:
                    raise self._deadline_error(request, attempts)
                if not outcome.retryable:
                    LOGGER.info(
                        "media resolution rejected key=%s provider=%s reason=%s",
                        request.cache_key,
                        adapter.name,
                        outcome.reason,
                    )
                    raise InvalidMediaRequestError("The media request is not valid.")
                last_failures[adapter.name] = outcome

        if cut_by_deadline:
            raise self._deadline_error(request, attempts)

        error = AllProvidersExhaustedError(
            cache_key=request.cache_key,
            provider_failures=last_failures,
        )
        if skipped_saturated:
            LOGGER.warning(
                "media resolution exhausted without caching key=%s attempts=%s failures=%s",
                request.cache_key,
                attempts,
                error.summary(),
            )
            raise error

        self._cache.put_failed(
            request=request,
            reason=error.summary(),
            ttl_seconds=self._failure_ttl_seconds,
            attempt_count=attempts,
        )
        LOGGER.warning(
            "media resolution exhausted key=%s attempts=%s failures=%s",
            request.cache_key,
            attempts,
            error.summary(),
        )
        raise error

    def _attempt(
        self,
        adapter: ProviderAdapter,
        request: ResolutionRequest,
        attempt_number: int,
        deadline_at: float,
    ) -> tuple[ResolvedMedia | AttemptFailure, bool]:
        remaining_seconds = max(0.0, deadline_at - self._clock())
        call_timeout = min(adapter.timeout_seconds, remaining_seconds)
        started_at = utc_now()
        call = _AttemptCall(
            lambda: adapter.resolve(request, timeout_seconds=call_timeout),
            name=f"media-resolver-attempt-{adapter.name}",
            on_abandoned_exit=lambda: self._release_stuck_call(adapter.name),
        )
        call.start()

        outcome: ResolvedMedia | AttemptFailure
        if not call.wait(call_timeout) and call.abandon():
            self._hold_stuck_call(adapter.name)
            outcome = AttemptFailure(
                kind=FailureKind.TIMEOUT,
                reason=f"no answer within {call_timeout:.2f}s",
            )
        elif isinstance(call.error, ProviderError):
            outcome = call.error.to_failure()
        elif call.error is not None:
            LOGGER.warning(
                "provider adapter raised unexpectedly provider=%s key=%s",
                adapter.name,
                request.cache_key,
                exc_info=call.error,
            )
            outcome = AttemptFailure(
                kind=FailureKind.INVALID_RESPONSE,
                reason=f"adapter error: {type(call.error).__name__}",
            )
        elif call.result is not None:
            outcome = call.result
        else:
            outcome = AttemptFailure(
                kind=FailureKind.INVALID_RESPONSE,
                reason="adapter returned no media",
            )

        record = AttemptRecord(
            request=request,
            provider=adapter.name,
            attempt_number=attempt_number,
            outcome=outcome,
            started_at=started_at,
            ended_at=utc_now(),
        )
        self._ledger.append(record)

        if isinstance(outcome, AttemptFailure):
            LOGGER.debug(
                "provider attempt failed key=%s provider=%s attempt=%s kind=%s reason=%s",
                request.cache_key,
                adapter.name,
                attempt_number,
                outcome.kind.value,
                outcome.reason,
            )
        self._telemetry.emit(
            "media.resolve.attempt",
            provider=adapter.name,
            attempt=attempt_number,
            outcome="success" if record.succeeded else "failure",
            failure_kind=outcome.kind if isinstance(outcome, AttemptFailure) else None,
            duration_ms=record.duration_ms,
        )

        if isinstance(outcome, ResolvedMedia):
            return outcome, False
        deadline_hit = self._clock() >= deadline_at or (
            outcome.kind is FailureKind.TIMEOUT and remaining_seconds <= adapter.timeout_seconds
        )
        return outcome, deadline_hit

    def _hold_stuck_call(self, provider: str) -> None:
        with self._stuck_lock:
            self._stuck_calls[provider] = self._stuck_calls.get(provider, 0) + 1

    def _release_stuck_call(self, provider: str) -> None:
        with self._stuck_lock:
            remaining = self._stuck_calls.get(provider, 0) - 1
            if remaining > 0:
                self._stuck_calls[provider] = remaining
            else:
                self._stuck_calls.pop(provider, None)

    def _wait_backoff(
        self,
        request: ResolutionRequest,
        previous_attempt: int,
        deadline_at: float,
    ) -> bool:
        """Sleep before a retry; False when the wait would outlast the deadline."""
        delay = self._backoff.delay_for(previous_attempt)
        if delay <= 0:
            return True
        if self._clock() + delay >= deadline_at:
            # The remaining budget on this provider is given up; later providers may still fit.
            LOGGER.info(
                "retry budget cut by deadline key=%s delay=%.2f",
                request.cache_key,
                delay,
            )
            return False
        if self._cancel_event.wait(delay):
            raise ResolutionTimeoutError(
                "Resolution was cancelled before it finished.",
                cache_key=request.cache_key,
            )
        return True

    def _deadline_error(self, request: ResolutionRequest, attempts: int) -> ResolutionTimeoutError:
        LOGGER.warning(
            "media resolution deadline elapsed key=%s attempts=%s",
            request.cache_key,
            attempts,
        )
        return ResolutionTimeoutError(
            "Media resolution did not finish before its deadline.",
            cache_key=request.cache_key,
        )
