from __future__ import annotations

from typing import Any

from backend.app.services.media_types import (
    FailureKind,
    ResolutionRequest,
    ResolvedMedia,
    VideoInfo,
)
from backend.app.services.providers.base import (
    ProviderError,
    Rendition,
    SpecBackedAdapter,
    as_dict,
    as_list,
    coerce_int,
    coerce_nonempty_string,
    description_preview,
    ensure_valid_video_id,
    extract_provider_error,
    parse_height,
    require_title,
)


class PipedAdapter(SpecBackedAdapter):
    """Stream-listing provider: `GET {base}/streams/{video_id}` serves both media and details."""

    def resolve(self, request: ResolutionRequest, *, timeout_seconds: float) -> ResolvedMedia:
        payload = self._fetch_streams(request.video_id, timeout_seconds)
        error_message = extract_provider_error(payload)
        if error_message is not None and not payload.get("videoStreams"):
            raise ProviderError(FailureKind.NOT_FOUND, f"provider error: {error_message}")

        return self._media_from_renditions(
            request,
            video=_parse_streams(payload.get("videoStreams"), default_mime="video/mp4"),
            audio=_parse_streams(payload.get("audioStreams"), default_mime="audio/mp4"),
        )

    def fetch_info(self, video_id: str, *, timeout_seconds: float) -> VideoInfo:
        payload = self._fetch_streams(video_id, timeout_seconds)
        return VideoInfo(
            video_id=video_id,
            title=require_title(payload),
            author=coerce_nonempty_string(payload.get("uploader")),
            author_url=coerce_nonempty_string(payload.get("uploaderUrl")),
            thumbnail_url=coerce_nonempty_string(payload.get("thumbnailUrl")),
            description=description_preview(payload.get("description")),
            duration_seconds=coerce_int(payload.get("duration")) or 0,
            view_count=coerce_int(payload.get("views")) or 0,
            upload_date=coerce_nonempty_string(payload.get("uploadDate")),
            source_provider=self.name,
        )

    def _fetch_streams(self, video_id: str, timeout_seconds: float) -> dict[str, Any]:
        ensure_valid_video_id(video_id)
        return self._http_client.fetch_json(
            "GET",
            f"{self._spec.base_url}/streams/{video_id}",
            timeout_seconds=timeout_seconds,
        )


def _parse_streams(raw_streams: Any, *, default_mime: str) -> list[Rendition]:
    renditions: list[Rendition] = []
    for raw_stream in as_list(raw_streams):
        stream = as_dict(raw_stream)
        url = coerce_nonempty_string(stream.get("url"))
        if url is None:
            continue
        renditions.append(
            Rendition(
                url=url,
                height=parse_height(stream.get("height"), stream.get("quality")),
                bitrate=coerce_int(stream.get("bitrate")),
                mime_type=coerce_nonempty_string(stream.get("mimeType")) or default_mime,
            )
        )
    return renditions
