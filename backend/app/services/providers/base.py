from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, cast

from backend.app.config import ProviderSpec
from backend.app.services.media_types import (
    AttemptFailure,
    FailureKind,
    ResolutionRequest,
    ResolvedMedia,
    VideoInfo,
    is_valid_video_id,
)

if TYPE_CHECKING:
    from backend.app.services.providers.http_client import ProviderHttpClient

_HEIGHT_LABEL_PATTERN = re.compile(r"^\s*(\d{2,4})p")
_SIZE_PATTERN = re.compile(r"^\s*\d+\s*x\s*(\d+)\s*$")
DEFAULT_MIME_HINTS: dict[str, str] = {"audio": "audio/mpeg", "video": "video/mp4"}
DESCRIPTION_PREVIEW_CHARS = 200


class ProviderError(Exception):
    def __init__(self, kind: FailureKind, reason: str) -> None:
        super().__init__(reason)
        self.kind = kind
        self.reason = reason

    def to_failure(self) -> AttemptFailure:
        return AttemptFailure(kind=self.kind, reason=self.reason)


class ProviderAdapter(Protocol):
    @property
    def name(self) -> str:
        ...

    @property
    def timeout_seconds(self) -> float:
        ...

    def resolve(self, request: ResolutionRequest, *, timeout_seconds: float) -> ResolvedMedia:
        ...


class VideoInfoSource(Protocol):
    @property
    def name(self) -> str:
        ...

    @property
    def timeout_seconds(self) -> float:
        ...

    def fetch_info(self, video_id: str, *, timeout_seconds: float) -> VideoInfo:
        ...


@dataclass(frozen=True)
class Rendition:
    url: str
    height: int | None = None
    bitrate: int | None = None
    mime_type: str | None = None


def ensure_valid_video_id(video_id: str) -> None:
    if not is_valid_video_id(video_id):
        raise ProviderError(
            FailureKind.INVALID_REQUEST,
            "video id must be an 11-character token",
        )


def select_video_rendition(
    renditions: Sequence[Rendition],
    target_height: int,
) -> Rendition | None:
    """
    Rendition whose height is nearest the target; `min` keeps the first-listed on ties.

    Renditions without a known height are only used when none reports one.
    """
    sized = [rendition for rendition in renditions if rendition.height is not None]
    if not sized:
        return renditions[0] if renditions else None
    return min(sized, key=lambda rendition: abs((rendition.height or 0) - target_height))


def select_audio_rendition(renditions: Sequence[Rendition]) -> Rendition | None:
    best: Rendition | None = None
    for rendition in renditions:
        if best is None or (rendition.bitrate or 0) > (best.bitrate or 0):
            best = rendition
    return best


def parse_height(*raw_values: object) -> int | None:
    for raw_value in raw_values:
        if isinstance(raw_value, bool):
            continue
        if isinstance(raw_value, int) and raw_value > 0:
            return raw_value
        if not isinstance(raw_value, str):
            continue
        label_match = _HEIGHT_LABEL_PATTERN.match(raw_value)
        if label_match is not None:
            return int(label_match.group(1))
        size_match = _SIZE_PATTERN.match(raw_value)
        if size_match is not None:
            return int(size_match.group(1))
    return None


def coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value.strip())
        except ValueError:
            return None
    return None


def coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return None


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []


def extract_provider_error(payload: dict[str, Any]) -> str | None:
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        nested = as_dict(value)
        nested_message = coerce_nonempty_string(nested.get("message"))
        if nested_message is not None:
            return nested_message
    return None


def require_title(payload: dict[str, Any]) -> str:
    title = coerce_nonempty_string(payload.get("title"))
    if title is not None:
        return title
    error_message = extract_provider_error(payload)
    if error_message is not None:
        raise ProviderError(FailureKind.NOT_FOUND, f"provider error: {error_message}")
    raise ProviderError(FailureKind.INVALID_RESPONSE, "response carries no title")


def description_preview(raw_value: object) -> str | None:
    description = coerce_nonempty_string(raw_value)
    if description is None or len(description) <= DESCRIPTION_PREVIEW_CHARS:
        return description
    return description[:DESCRIPTION_PREVIEW_CHARS].rstrip() + "..."


class SpecBackedAdapter:
    """Shared plumbing for adapters configured from a `ProviderSpec`."""

    def __init__(self, spec: ProviderSpec, http_client: ProviderHttpClient) -> None:
        self._spec = spec
        self._http_client = http_client

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def timeout_seconds(self) -> float:
        return self._spec.timeout_seconds

    def _target_height(self, request: ResolutionRequest) -> int:
        return self._spec.tier_heights[request.quality_tier]

    def _quality_param(self, request: ResolutionRequest) -> str:
        return self._spec.quality_params.get(request.quality_tier, request.quality_tier)

    def _media_from_renditions(
        self,
        request: ResolutionRequest,
        *,
        video: Sequence[Rendition],
        audio: Sequence[Rendition],
    ) -> ResolvedMedia:
        if request.kind == "audio":
            selected = select_audio_rendition(audio)
        else:
            selected = select_video_rendition(video, self._target_height(request))
        if selected is None:
            raise ProviderError(
                FailureKind.NOT_FOUND,
                f"no {request.kind} renditions listed",
            )
        return self._media(request, locator=selected.url, mime_hint=selected.mime_type)

    def _media(
        self,
        request: ResolutionRequest,
        *,
        locator: str,
        mime_hint: str | None = None,
    ) -> ResolvedMedia:
        return ResolvedMedia(
            locator=locator,
            mime_hint=mime_hint or DEFAULT_MIME_HINTS[request.kind],
            source_provider=self.name,
            resolved_at=datetime.now(UTC),
        )
