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


class InvidiousAdapter(SpecBackedAdapter):
    """
    Adaptive-format provider: `GET {base}/videos/{video_id}`.

    Each entry in `adaptiveFormats` carries a MIME `type` such as
    `video/mp4; codecs="avc1.4d401f"`; the prefix decides whether it is audio or video.
    """

    def resolve(self, request: ResolutionRequest, *, timeout_seconds: float) -> ResolvedMedia:
        payload = self._fetch_video(request.video_id, timeout_seconds)
        if "adaptiveFormats" not in payload:
            error_message = extract_provider_error(payload)
            if error_message is not None:
                raise ProviderError(FailureKind.NOT_FOUND, f"provider error: {error_message}")

        video, audio = _split_adaptive_formats(payload.get("adaptiveFormats"))
        return self._media_from_renditions(request, video=video, audio=audio)

    def fetch_info(self, video_id: str, *, timeout_seconds: float) -> VideoInfo:
        payload = self._fetch_video(video_id, timeout_seconds)
        author_id = coerce_nonempty_string(payload.get("authorId"))
        thumbnails = [as_dict(entry) for entry in as_list(payload.get("videoThumbnails"))]
        return VideoInfo(
            video_id=video_id,
            title=require_title(payload),
            author=coerce_nonempty_string(payload.get("author")),
            author_url=f"https://youtube.com/channel/{author_id}" if author_id else None,
            thumbnail_url=coerce_nonempty_string(thumbnails[0].get("url")) if thumbnails else None,
            description=description_preview(payload.get("description")),
            duration_seconds=coerce_int(payload.get("lengthSeconds")) or 0,
            view_count=coerce_int(payload.get("viewCount")) or 0,
            upload_date=coerce_nonempty_string(payload.get("publishedText")),
            source_provider=self.name,
        )

    def _fetch_video(self, video_id: str, timeout_seconds: float) -> dict[str, Any]:
        ensure_valid_video_id(video_id)
        return self._http_client.fetch_json(
            "GET",
            f"{self._spec.base_url}/videos/{video_id}",
            timeout_seconds=timeout_seconds,
        )


def _split_adaptive_formats(raw_formats: Any) -> tuple[list[Rendition], list[Rendition]]:
    video: list[Rendition] = []
    audio: list[Rendition] = []
    for raw_format in as_list(raw_formats):
        entry = as_dict(raw_format)
        url = coerce_nonempty_string(entry.get("url"))
        raw_type = coerce_nonempty_string(entry.get("type"))
        if url is None or raw_type is None:
            continue
        mime_type = raw_type.split(";", 1)[0].strip().lower()
        rendition = Rendition(
            url=url,
            height=parse_height(
                entry.get("height"),
                entry.get("resolution"),
                entry.get("qualityLabel"),
                entry.get("size"),
            ),
            bitrate=coerce_int(entry.get("bitrate")),
            mime_type=mime_type,
        )
        if mime_type.startswith("video/"):
            video.append(rendition)
        elif mime_type.startswith("audio/"):
            audio.append(rendition)
    return video, audio
