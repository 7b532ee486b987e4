from __future__ import annotations

import logging
import threading
from collections.abc import Sequence

from backend.app.services.media_resolver import BackoffPolicy
from backend.app.services.media_types import (
    AttemptFailure,
    FailureKind,
    InvalidMediaRequestError,
    VideoInfo,
    VideoInfoUnavailableError,
    is_valid_video_id,
)
from backend.app.services.providers.base import ProviderError, VideoInfoSource
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("media_resolver.video_info")


class VideoInfoLookup:
    """
    First-success walk over video detail sources.

    One round asks every source once, in order. When a whole round fails the lookup
    waits `backoff.delay_for(round)` and starts over, up to `rounds` rounds.
    """

    def __init__(
        self,
        sources: Sequence[VideoInfoSource],
        *,
        rounds: int = 3,
        backoff: BackoffPolicy | None = None,
        telemetry: TelemetryClient | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._sources = tuple(sources)
        self._rounds = max(1, rounds)
        self._backoff = backoff if backoff is not None else BackoffPolicy(base_seconds=2.0)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()

    @property
    def source_names(self) -> list[str]:
        return [source.name for source in self._sources]

    def close(self) -> None:
        self._cancel_event.set()

    def fetch(self, video_id: str) -> VideoInfo:
        if not is_valid_video_id(video_id):
            raise InvalidMediaRequestError("Video id must be an 11-character token.")

        failures: dict[str, AttemptFailure] = {}
        with self._telemetry.span("media.info") as finish_attributes:
            for round_number in range(1, self._rounds + 1):
                if round_number > 1 and self._cancel_event.wait(
                    self._backoff.delay_for(round_number - 1)
                ):
                    break
                for source in self._sources:
                    outcome = self._ask(source, video_id)
                    if isinstance(outcome, VideoInfo):
                        finish_attributes["source"] = outcome.source_provider
                        finish_attributes["round"] = round_number
                        return outcome
                    failures[source.name] = outcome

            error = VideoInfoUnavailableError(video_id=video_id, source_failures=failures)
            LOGGER.warning(
                "video info unavailable video_id=%s failures=%s",
                video_id,
                error.summary() or "no sources configured",
            )
            raise error

    def _ask(self, source: VideoInfoSource, video_id: str) -> VideoInfo | AttemptFailure:
        try:
            return source.fetch_info(video_id, timeout_seconds=source.timeout_seconds)
        except ProviderError as exc:
            if exc.kind is FailureKind.INVALID_REQUEST:
                raise InvalidMediaRequestError("The video id is not valid.") from exc
            LOGGER.debug(
                "video info source failed video_id=%s source=%s kind=%s reason=%s",
                video_id,
                source.name,
                exc.kind.value,
                exc.reason,
            )
            return exc.to_failure()
        except Exception as exc:
            LOGGER.warning(
                "video info source raised unexpectedly source=%s video_id=%s",
                source.name,
                video_id,
                exc_info=True,
            )
            return AttemptFailure(
                kind=FailureKind.INVALID_RESPONSE,
                reason=f"source error: {type(exc).__name__}",
            )
