from __future__ import annotations

import io
import json
from collections.abc import Mapping
from email.message import Message
from typing import Any, cast
from urllib.error import HTTPError, URLError

import pytest

from backend.app.config import ProviderSpec
from backend.app.services.media_types import (
    FailureKind,
    MediaKind,
    QualityTier,
    ResolutionRequest,
)
from backend.app.services.providers import (
    InvidiousAdapter,
    LocatorAdapter,
    PipedAdapter,
    PreflightAdapter,
    ProviderError,
    ProviderHttpClient,
    ProviderHttpResponse,
    Rendition,
    WatchPageInfoSource,
    build_info_sources,
    build_provider_adapters,
    select_audio_rendition,
    select_video_rendition,
)
from backend.app.services.providers.base import parse_height

VIDEO_ID = "dQw4w9WgXcQ"


class _FakeHttpClient(ProviderHttpClient):
    def __init__(
        self,
        responses: Mapping[tuple[str, str], ProviderHttpResponse | Exception],
    ) -> None:
        super().__init__(user_agent="media-resolver-tests")
        self._responses = dict(responses)
        self.calls: list[dict[str, Any]] = []

    def request(
        self,
        method: str,
        url: str,
        *,
        timeout_seconds: float,
        headers: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> ProviderHttpResponse:
        self.calls.append(
            {
                "method": method,
                "url": url,
                "timeout_seconds": timeout_seconds,
                "headers": dict(headers or {}),
                "json_body": None if json_body is None else dict(json_body),
            }
        )
        response = self._responses.get((method, url))
        if response is None:
            raise AssertionError(f"unexpected request {method} {url}")
        if isinstance(response, Exception):
            raise response
        return response


def _json_response(payload: object, status_code: int = 200) -> ProviderHttpResponse:
    return ProviderHttpResponse(status_code=status_code, body=json.dumps(payload))


def _spec(shape: str, **overrides: Any) -> ProviderSpec:
    values: dict[str, Any] = {
        "name": f"{shape}-test",
        "shape": shape,
        "base_url": f"https://{shape}.test",
    }
    values.update(overrides)
    return ProviderSpec(**values)


def _request(kind: str = "video", quality_tier: str = "medium") -> ResolutionRequest:
    return ResolutionRequest(
        video_id=VIDEO_ID,
        kind=cast(MediaKind, kind),
        quality_tier=cast(QualityTier, quality_tier),
    )


def test_select_video_rendition_picks_nearest_height() -> None:
    renditions = [
        Rendition(url=f"https://cdn.test/{height}", height=height)
        for height in (144, 360, 480, 720, 1080)
    ]

    selected = select_video_rendition(renditions, 480)

    assert selected is not None
    assert selected.url == "https://cdn.test/480"


def test_select_video_rendition_breaks_ties_by_listing_order() -> None:
    renditions = [
        Rendition(url="https://cdn.test/600", height=600),
        Rendition(url="https://cdn.test/360", height=360),
        Rendition(url="https://cdn.test/also-600", height=600),
    ]

    selected = select_video_rendition(renditions, 480)

    assert selected is not None
    assert selected.url == "https://cdn.test/600"
    assert select_video_rendition([], 480) is None


def test_select_video_rendition_prefers_known_heights() -> None:
    unsized = Rendition(url="https://cdn.test/unknown")
    renditions = [unsized, Rendition(url="https://cdn.test/360", height=360)]

    selected = select_video_rendition(renditions, 144)

    assert selected is not None
    assert selected.url == "https://cdn.test/360"
    assert select_video_rendition([unsized, Rendition(url="https://cdn.test/x")], 144) is unsized


def test_select_audio_rendition_prefers_highest_bitrate_then_first_listed() -> None:
    renditions = [
        Rendition(url="https://cdn.test/a", bitrate=64_000),
        Rendition(url="https://cdn.test/b", bitrate=160_000),
        Rendition(url="https://cdn.test/c", bitrate=160_000),
        Rendition(url="https://cdn.test/d"),
    ]

    selected = select_audio_rendition(renditions)

    assert selected is not None
    assert selected.url == "https://cdn.test/b"
    assert select_audio_rendition([]) is None


def test_parse_height_accepts_labels_and_sizes() -> None:
    assert parse_height(720) == 720
    assert parse_height(None, "1080p60") == 1080
    assert parse_height("1280x720") == 720
    assert parse_height(True, "audio only") is None


def test_piped_adapter_selects_rendition_for_tier() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://piped.test/streams/{VIDEO_ID}"): _json_response(
                {
                    "videoStreams": [
                        {
                            "url": "https://cdn.test/v144",
                            "quality": "144p",
                            "mimeType": "video/mp4",
                        },
                        {
                            "url": "https://cdn.test/v480",
                            "quality": "480p",
                            "mimeType": "video/webm",
                        },
                        {"url": "https://cdn.test/v1080", "height": 1080},
                    ],
                    "audioStreams": [
                        {
                            "url": "https://cdn.test/a48",
                            "bitrate": 48_000,
                            "mimeType": "audio/webm",
                        },
                        {
                            "url": "https://cdn.test/a128",
                            "bitrate": "128000",
                            "mimeType": "audio/mp4",
                        },
                    ],
                }
            )
        }
    )
    adapter = PipedAdapter(_spec("piped"), http_client)

    video = adapter.resolve(_request("video", "medium"), timeout_seconds=2.0)
    high = adapter.resolve(_request("video", "high"), timeout_seconds=2.0)
    audio = adapter.resolve(_request("audio"), timeout_seconds=2.0)

    assert video.locator == "https://cdn.test/v480"
    assert video.mime_hint == "video/webm"
    assert video.source_provider == "piped-test"
    assert high.locator == "https://cdn.test/v480"
    assert audio.locator == "https://cdn.test/a128"
    assert audio.mime_hint == "audio/mp4"
    assert http_client.calls[0]["timeout_seconds"] == 2.0


def test_piped_adapter_honours_configured_tier_heights() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://piped.test/streams/{VIDEO_ID}"): _json_response(
                {
                    "videoStreams": [
                        {"url": "https://cdn.test/v360", "quality": "360p"},
                        {"url": "https://cdn.test/v1080", "quality": "1080p"},
                    ]
                }
            )
        }
    )
    adapter = PipedAdapter(_spec("piped", tier_heights={"high": 1080}), http_client)

    media = adapter.resolve(_request("video", "high"), timeout_seconds=2.0)

    assert media.locator == "https://cdn.test/v1080"


@pytest.mark.parametrize(
    ("response", "expected_kind"),
    [
        (_json_response({"error": "Video unavailable"}), FailureKind.NOT_FOUND),
        (_json_response({"videoStreams": [], "audioStreams": []}), FailureKind.NOT_FOUND),
        (_json_response({"title": "no streams at all"}), FailureKind.NOT_FOUND),
        (ProviderHttpResponse(status_code=404, body=""), FailureKind.NOT_FOUND),
        (ProviderHttpResponse(status_code=503, body="busy"), FailureKind.UNREACHABLE),
        (ProviderHttpResponse(status_code=200, body="<html>"), FailureKind.INVALID_RESPONSE),
        (ProviderHttpResponse(status_code=200, body="[1, 2]"), FailureKind.INVALID_RESPONSE),
        (ProviderHttpResponse(status_code=200, body="  "), FailureKind.INVALID_RESPONSE),
    ],
)
def test_piped_adapter_maps_failures(
    response: ProviderHttpResponse,
    expected_kind: FailureKind,
) -> None:
    http_client = _FakeHttpClient({("GET", f"https://piped.test/streams/{VIDEO_ID}"): response})
    adapter = PipedAdapter(_spec("piped"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.resolve(_request(), timeout_seconds=2.0)

    assert exc_info.value.kind is expected_kind


def test_adapters_reject_malformed_video_id_without_network() -> None:
    http_client = _FakeHttpClient({})
    request = ResolutionRequest(video_id="not-a-valid-id", kind="video")

    for adapter in build_provider_adapters(
        [
            _spec("piped"),
            _spec("invidious"),
            _spec("locator", method="POST"),
            _spec("preflight"),
        ],
        http_client,
    ):
        with pytest.raises(ProviderError) as exc_info:
            adapter.resolve(request, timeout_seconds=1.0)
        assert exc_info.value.kind is FailureKind.INVALID_REQUEST

    assert http_client.calls == []


def test_invidious_adapter_splits_adaptive_formats() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://invidious.test/videos/{VIDEO_ID}"): _json_response(
                {
                    "adaptiveFormats": [
                        {
                            "url": "https://cdn.test/v720",
                            "type": 'video/mp4; codecs="avc1.64001F"',
                            "resolution": "720p",
                        },
                        {
                            "url": "https://cdn.test/v240",
                            "type": 'video/webm; codecs="vp9"',
                            "size": "426x240",
                        },
                        {
                            "url": "https://cdn.test/a-opus",
                            "type": 'audio/webm; codecs="opus"',
                            "bitrate": "140000",
                        },
                        {
                            "url": "https://cdn.test/a-aac",
                            "type": 'audio/mp4; codecs="mp4a.40.2"',
                            "bitrate": 130000,
                        },
                        {"url": "https://cdn.test/untyped"},
                    ]
                }
            )
        }
    )
    adapter = InvidiousAdapter(_spec("invidious"), http_client)

    low = adapter.resolve(_request("video", "low"), timeout_seconds=3.0)
    high = adapter.resolve(_request("video", "high"), timeout_seconds=3.0)
    audio = adapter.resolve(_request("audio"), timeout_seconds=3.0)

    assert low.locator == "https://cdn.test/v240"
    assert low.mime_hint == "video/webm"
    assert high.locator == "https://cdn.test/v720"
    assert audio.locator == "https://cdn.test/a-opus"
    assert audio.mime_hint == "audio/webm"


def test_invidious_adapter_reports_provider_error_as_not_found() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://invidious.test/videos/{VIDEO_ID}"): _json_response(
                {"error": "This video is private"}
            )
        }
    )
    adapter = InvidiousAdapter(_spec("invidious"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.resolve(_request("audio"), timeout_seconds=3.0)

    assert exc_info.value.kind is FailureKind.NOT_FOUND


def test_locator_adapter_posts_request_body() -> None:
    http_client = _FakeHttpClient(
        {("POST", "https://locator.test"): _json_response({"downloadUrl": "https://dl.test/file"})}
    )
    adapter = LocatorAdapter(
        _spec("locator", method="POST", quality_params={"high": "1080p"}),
        http_client,
    )

    media = adapter.resolve(_request("video", "high"), timeout_seconds=4.0)
    audio = adapter.resolve(_request("audio", "low"), timeout_seconds=4.0)

    assert media.locator == "https://dl.test/file"
    assert media.mime_hint == "video/mp4"
    assert audio.mime_hint == "audio/mpeg"
    assert http_client.calls[0]["json_body"] == {
        "id": VIDEO_ID,
        "quality": "1080p",
        "format": "mp4",
    }
    assert http_client.calls[1]["json_body"] == {"id": VIDEO_ID, "quality": "low", "format": "mp3"}


def test_locator_adapter_renders_get_template() -> None:
    url = f"https://locator.test/download?v={VIDEO_ID}&q=720&f=mp4"
    http_client = _FakeHttpClient({("GET", url): _json_response({"link": "https://dl.test/x"})})
    adapter = LocatorAdapter(
        _spec(
            "locator",
            path_template="/download?v={video_id}&q={quality}&f={format}",
            quality_params={"medium": "720"},
        ),
        http_client,
    )

    media = adapter.resolve(_request("video", "medium"), timeout_seconds=4.0)

    assert media.locator == "https://dl.test/x"


def test_locator_adapter_defaults_to_id_path_and_maps_missing_locator() -> None:
    url = f"https://locator.test/{VIDEO_ID}"
    http_client = _FakeHttpClient({("GET", url): _json_response({"status": "processing"})})
    adapter = LocatorAdapter(_spec("locator"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.resolve(_request(), timeout_seconds=4.0)

    assert exc_info.value.kind is FailureKind.INVALID_RESPONSE


def test_locator_adapter_maps_error_message_to_not_found() -> None:
    url = f"https://locator.test/{VIDEO_ID}"
    http_client = _FakeHttpClient(
        {("GET", url): _json_response({"error": {"message": "video not found"}})}
    )
    adapter = LocatorAdapter(_spec("locator"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.resolve(_request(), timeout_seconds=4.0)

    assert exc_info.value.kind is FailureKind.NOT_FOUND


def test_preflight_adapter_builds_locator_after_watch_page_check() -> None:
    check_url = f"https://preflight.test?url=https://youtube.com/watch?v={VIDEO_ID}"
    http_client = _FakeHttpClient({("GET", check_url): ProviderHttpResponse(200, "<html>")})
    adapter = PreflightAdapter(
        _spec("preflight", quality_params={"high": "720"}),
        http_client,
    )

    media = adapter.resolve(_request("video", "high"), timeout_seconds=2.0)

    assert media.locator == f"https://preflight.test/720/{VIDEO_ID}"
    assert len(http_client.calls) == 1
    assert http_client.calls[0]["headers"] == {"accept": "text/html"}


def test_preflight_adapter_uses_configured_check_template() -> None:
    http_client = _FakeHttpClient(
        {("GET", f"https://preflight.test/check/{VIDEO_ID}"): ProviderHttpResponse(200, "")}
    )
    adapter = PreflightAdapter(
        _spec("preflight", check_template="/check/{video_id}", path_template="/dl/{video_id}"),
        http_client,
    )

    media = adapter.resolve(_request(), timeout_seconds=2.0)

    assert media.locator == f"https://preflight.test/dl/{VIDEO_ID}"


def test_preflight_adapter_treats_failed_check_as_unreachable() -> None:
    check_url = f"https://preflight.test?url=https://youtube.com/watch?v={VIDEO_ID}"
    http_client = _FakeHttpClient({("GET", check_url): ProviderHttpResponse(404, "")})
    adapter = PreflightAdapter(_spec("preflight"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.resolve(_request(), timeout_seconds=2.0)

    assert exc_info.value.kind is FailureKind.UNREACHABLE


def test_build_provider_adapters_keeps_order_and_skips_disabled() -> None:
    adapters = build_provider_adapters(
        [
            _spec("invidious", name="first", timeout_seconds=1.5),
            _spec("piped", name="skipped", enabled=False),
            _spec("preflight", name="second"),
        ],
        _FakeHttpClient({}),
    )

    assert [adapter.name for adapter in adapters] == ["first", "second"]
    assert isinstance(adapters[0], InvidiousAdapter)
    assert isinstance(adapters[1], PreflightAdapter)
    assert adapters[0].timeout_seconds == 1.5


class _FakeUrlopenResponse:
    def __init__(self, status: int, body: bytes) -> None:
        self._status = status
        self._body = body
        self.headers = Message()

    def __enter__(self) -> _FakeUrlopenResponse:
        return self

    def __exit__(self, *_: object) -> None:
        return None

    def getcode(self) -> int:
        return self._status

    def read(self) -> bytes:
        return self._body


def test_http_client_sends_json_and_reads_response(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def _fake_urlopen(request: Any, timeout: float) -> _FakeUrlopenResponse:
        captured["method"] = request.get_method()
        captured["body"] = json.loads(request.data.decode("utf-8"))
        captured["user_agent"] = request.get_header("User-agent")
        captured["timeout"] = timeout
        return _FakeUrlopenResponse(200, b'{"url": "https://dl.test/x"}')

    monkeypatch.setattr("backend.app.services.providers.http_client.urlopen", _fake_urlopen)
    client = ProviderHttpClient(user_agent="media-resolver-tests")

    payload = client.fetch_json(
        "post",
        "https://locator.test",
        timeout_seconds=1.5,
        json_body={"id": VIDEO_ID},
    )

    assert payload == {"url": "https://dl.test/x"}
    assert captured == {
        "method": "POST",
        "body": {"id": VIDEO_ID},
        "user_agent": "media-resolver-tests",
        "timeout": 1.5,
    }


def test_http_client_returns_error_statuses(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_urlopen(request: Any, timeout: float) -> _FakeUrlopenResponse:
        _ = timeout
        raise HTTPError(request.full_url, 410, "Gone", Message(), io.BytesIO(b"gone"))

    monkeypatch.setattr("backend.app.services.providers.http_client.urlopen", _fake_urlopen)
    client = ProviderHttpClient(user_agent="media-resolver-tests")

    response = client.request("GET", "https://piped.test/streams/x", timeout_seconds=1.0)

    assert response.status_code == 410
    assert response.body == "gone"
    assert response.ok is False


@pytest.mark.parametrize(
    ("error", "expected_kind"),
    [
        (TimeoutError("timed out"), FailureKind.TIMEOUT),
        (URLError(TimeoutError("connect timed out")), FailureKind.TIMEOUT),
        (URLError("Name or service not known"), FailureKind.UNREACHABLE),
        (ConnectionResetError("reset"), FailureKind.UNREACHABLE),
    ],
)
def test_http_client_maps_transport_errors(
    monkeypatch: pytest.MonkeyPatch,
    error: Exception,
    expected_kind: FailureKind,
) -> None:
    def _fake_urlopen(request: Any, timeout: float) -> _FakeUrlopenResponse:
        _ = (request, timeout)
        raise error

    monkeypatch.setattr("backend.app.services.providers.http_client.urlopen", _fake_urlopen)
    client = ProviderHttpClient(user_agent="media-resolver-tests")

    with pytest.raises(ProviderError) as exc_info:
        client.request("GET", "https://piped.test/streams/x", timeout_seconds=1.0)

    assert exc_info.value.kind is expected_kind


def test_piped_adapter_fetches_video_details() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://piped.test/streams/{VIDEO_ID}"): _json_response(
                {
                    "title": "Never Gonna Give You Up",
                    "uploader": "Rick Astley",
                    "uploaderUrl": "/channel/UCuAXFkgsw1L7xaCfnd5JJOw",
                    "thumbnailUrl": "https://pipedproxy.test/vi/thumb.jpg",
                    "description": "x" * 250,
                    "duration": 213,
                    "views": "1500000000",
                    "uploadDate": "2009-10-25",
                    "videoStreams": [],
                }
            )
        }
    )
    adapter = PipedAdapter(_spec("piped"), http_client)

    info = adapter.fetch_info(VIDEO_ID, timeout_seconds=3.0)

    assert info.title == "Never Gonna Give You Up"
    assert info.author == "Rick Astley"
    assert info.author_url == "/channel/UCuAXFkgsw1L7xaCfnd5JJOw"
    assert info.duration_seconds == 213
    assert info.view_count == 1_500_000_000
    assert info.upload_date == "2009-10-25"
    assert info.description == "x" * 200 + "..."
    assert info.source_provider == "piped-test"


def test_invidious_adapter_fetches_video_details() -> None:
    http_client = _FakeHttpClient(
        {
            ("GET", f"https://invidious.test/videos/{VIDEO_ID}"): _json_response(
                {
                    "title": "Never Gonna Give You Up",
                    "author": "Rick Astley",
                    "authorId": "UCuAXFkgsw1L7xaCfnd5JJOw",
                    "videoThumbnails": [
                        {"quality": "maxres", "url": "https://inv.test/vi/maxres.jpg"},
                        {"quality": "high", "url": "https://inv.test/vi/high.jpg"},
                    ],
                    "description": "short",
                    "lengthSeconds": 213,
                    "viewCount": 42,
                    "publishedText": "14 years ago",
                }
            )
        }
    )
    adapter = InvidiousAdapter(_spec("invidious"), http_client)

    info = adapter.fetch_info(VIDEO_ID, timeout_seconds=3.0)

    assert info.author_url == "https://youtube.com/channel/UCuAXFkgsw1L7xaCfnd5JJOw"
    assert info.thumbnail_url == "https://inv.test/vi/maxres.jpg"
    assert info.description == "short"
    assert (info.duration_seconds, info.view_count) == (213, 42)
    assert info.upload_date == "14 years ago"


@pytest.mark.parametrize(
    ("payload", "expected_kind"),
    [
        ({"error": "Video unavailable"}, FailureKind.NOT_FOUND),
        ({"lengthSeconds": 10}, FailureKind.INVALID_RESPONSE),
    ],
)
def test_invidious_details_without_title_fail(
    payload: dict[str, Any],
    expected_kind: FailureKind,
) -> None:
    http_client = _FakeHttpClient(
        {("GET", f"https://invidious.test/videos/{VIDEO_ID}"): _json_response(payload)}
    )
    adapter = InvidiousAdapter(_spec("invidious"), http_client)

    with pytest.raises(ProviderError) as exc_info:
        adapter.fetch_info(VIDEO_ID, timeout_seconds=3.0)

    assert exc_info.value.kind is expected_kind


def test_watch_page_source_extracts_title_author_and_thumbnail() -> None:
    page = (
        "<html><head><title>Never Gonna Give You Up &amp; More - YouTube</title></head>"
        '<script>{"thumbnailUrl": ["https://i.ytimg.com/vi/abc/maxresdefault.jpg"],'
        '"author": "Rick Astley"}</script></html>'
    )
    url = f"https://proxy.test/?https://www.youtube.com/watch?v={VIDEO_ID}"
    http_client = _FakeHttpClient({("GET", url): ProviderHttpResponse(200, page)})
    source = WatchPageInfoSource("https://proxy.test/?", http_client)

    info = source.fetch_info(VIDEO_ID, timeout_seconds=8.0)

    assert source.name == "watch-page:proxy.test"
    assert info.title == "Never Gonna Give You Up & More"
    assert info.author == "Rick Astley"
    assert info.thumbnail_url == "https://i.ytimg.com/vi/abc/maxresdefault.jpg"
    assert (info.duration_seconds, info.view_count) == (0, 0)
    assert http_client.calls[0]["headers"]["accept"].startswith("text/html")


def test_watch_page_source_defaults_thumbnail_and_requires_title() -> None:
    url = f"https://proxy.test/?https://www.youtube.com/watch?v={VIDEO_ID}"
    minimal = _FakeHttpClient(
        {("GET", url): ProviderHttpResponse(200, "<title>Some video - YouTube</title>")}
    )
    info = WatchPageInfoSource("https://proxy.test/?", minimal).fetch_info(
        VIDEO_ID, timeout_seconds=8.0
    )
    assert info.title == "Some video"
    assert info.author is None
    assert info.thumbnail_url == f"https://i.ytimg.com/vi/{VIDEO_ID}/hqdefault.jpg"

    untitled = _FakeHttpClient(
        {("GET", url): ProviderHttpResponse(200, "<title> - YouTube</title>")}
    )
    with pytest.raises(ProviderError) as exc_info:
        WatchPageInfoSource("https://proxy.test/?", untitled).fetch_info(
            VIDEO_ID, timeout_seconds=8.0
        )
    assert exc_info.value.kind is FailureKind.INVALID_RESPONSE


def test_build_info_sources_keeps_detail_providers_then_watch_pages() -> None:
    sources = build_info_sources(
        [
            _spec("locator", name="locator-a"),
            _spec("invidious", name="invidious-b"),
            _spec("piped", name="piped-c", enabled=False),
            _spec("piped", name="piped-d"),
        ],
        ProviderHttpClient(user_agent="media-resolver-tests"),
        watch_page_prefixes=["https://corsproxy.test/?"],
    )

    assert [source.name for source in sources] == [
        "invidious-b",
        "piped-d",
        "watch-page:corsproxy.test",
    ]
