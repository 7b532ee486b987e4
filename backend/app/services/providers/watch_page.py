from __future__ import annotations

import html
import re
from urllib.parse import urlsplit

from backend.app.services.media_types import FailureKind, VideoInfo
from backend.app.services.providers.base import ProviderError, ensure_valid_video_id
from backend.app.services.providers.http_client import ProviderHttpClient, raise_for_status

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
DEFAULT_THUMBNAIL_TEMPLATE = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"
_PAGE_HEADERS: dict[str, str] = {
    "accept": "text/html,application/xhtml+xml,application/xml",
    "accept-language": "en-US,en;q=0.9",
}
_TITLE_PATTERN = re.compile(r"<title>(.*?)</title>", re.DOTALL)
_THUMBNAIL_PATTERN = re.compile(r'"thumbnailUrl":\s*\["(https://i\.ytimg\.com/vi/[^"]+)"')
_AUTHOR_PATTERN = re.compile(r'"author":\s*"([^"]+)"')
_TITLE_SUFFIX = "- YouTube"


class WatchPageInfoSource:
    """
    Reads video details straight from the public watch page, fetched through a proxy.

    `page_url_prefix` is prepended to the watch URL as-is, so it must carry whatever
    query parameter the proxy expects. The page only exposes the title, the channel
    name and a thumbnail; duration and view count are reported as 0.
    """

    def __init__(
        self,
        page_url_prefix: str,
        http_client: ProviderHttpClient,
        *,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._page_url_prefix = page_url_prefix
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._name = f"watch-page:{urlsplit(page_url_prefix).hostname or page_url_prefix}"

    @property
    def name(self) -> str:
        return self._name

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def fetch_info(self, video_id: str, *, timeout_seconds: float) -> VideoInfo:
        ensure_valid_video_id(video_id)
        response = self._http_client.request(
            "GET",
            f"{self._page_url_prefix}{WATCH_URL_TEMPLATE.format(video_id=video_id)}",
            timeout_seconds=timeout_seconds,
            headers=_PAGE_HEADERS,
        )
        raise_for_status(response)
        page = response.body

        title = _first_group(_TITLE_PATTERN, page)
        if title is not None:
            title = title.removesuffix(_TITLE_SUFFIX).strip()
        if not title:
            raise ProviderError(FailureKind.INVALID_RESPONSE, "watch page carries no title")

        return VideoInfo(
            video_id=video_id,
            title=title,
            author=_first_group(_AUTHOR_PATTERN, page),
            author_url=None,
            thumbnail_url=(
                _first_group(_THUMBNAIL_PATTERN, page)
                or DEFAULT_THUMBNAIL_TEMPLATE.format(video_id=video_id)
            ),
            description=None,
            duration_seconds=0,
            view_count=0,
            upload_date=None,
            source_provider=self.name,
        )


def _first_group(pattern: re.Pattern[str], page: str) -> str | None:
    match = pattern.search(page)
    if match is None:
        return None
    value = html.unescape(match.group(1)).strip()
    return value or None
