from __future__ import annotations

from backend.app.services.media_types import FailureKind, ResolutionRequest, ResolvedMedia
from backend.app.services.providers.base import (
    ProviderError,
    SpecBackedAdapter,
    coerce_nonempty_string,
    ensure_valid_video_id,
    extract_provider_error,
)

LOCATOR_RESPONSE_KEYS: tuple[str, ...] = ("url", "link", "downloadUrl")
DEFAULT_CHECK_TEMPLATE = "?url=https://youtube.com/watch?v={video_id}"
_CONTAINER_FORMATS: dict[str, str] = {"audio": "mp3", "video": "mp4"}


class LocatorAdapter(SpecBackedAdapter):
    """
    Provider that answers with a ready-made locator in a small JSON object.

    GET providers build their URL from `path_template`; POST providers send
    `{"id", "quality", "format"}` to the base URL.
    """

    def resolve(self, request: ResolutionRequest, *, timeout_seconds: float) -> ResolvedMedia:
        ensure_valid_video_id(request.video_id)
        if self._spec.method == "POST":
            payload = self._http_client.fetch_json(
                "POST",
                self._spec.base_url,
                timeout_seconds=timeout_seconds,
                json_body={
                    "id": request.video_id,
                    "quality": self._quality_param(request),
                    "format": _CONTAINER_FORMATS[request.kind],
                },
            )
        else:
            payload = self._http_client.fetch_json(
                "GET",
                render_provider_url(
                    self._spec.base_url,
                    self._spec.path_template,
                    self._placeholders(request),
                ),
                timeout_seconds=timeout_seconds,
            )

        for key in LOCATOR_RESPONSE_KEYS:
            locator = coerce_nonempty_string(payload.get(key))
            if locator is not None:
                return self._media(request, locator=locator)

        error_message = extract_provider_error(payload)
        if error_message is not None:
            raise ProviderError(FailureKind.NOT_FOUND, f"provider error: {error_message}")
        raise ProviderError(FailureKind.INVALID_RESPONSE, "response carries no locator")

    def _placeholders(self, request: ResolutionRequest) -> dict[str, str]:
        return {
            "video_id": request.video_id,
            "quality": self._quality_param(request),
            "kind": request.kind,
            "format": _CONTAINER_FORMATS[request.kind],
        }


class PreflightAdapter(LocatorAdapter):
    """
    Provider whose locator is constructed locally once a check request succeeds.

    The check is an HTML page request built from `check_template` (by default the
    provider's watch-url form); anything but a 200 means the provider cannot serve
    the video right now. The locator comes from `path_template`.
    """

    def resolve(self, request: ResolutionRequest, *, timeout_seconds: float) -> ResolvedMedia:
        ensure_valid_video_id(request.video_id)
        placeholders = self._placeholders(request)
        response = self._http_client.request(
            "GET",
            render_provider_url(
                self._spec.base_url,
                self._spec.check_template or DEFAULT_CHECK_TEMPLATE,
                placeholders,
            ),
            timeout_seconds=timeout_seconds,
            headers={"accept": "text/html"},
        )
        if response.status_code != 200:
            raise ProviderError(
                FailureKind.UNREACHABLE,
                f"preflight returned {response.status_code}",
            )
        locator = render_provider_url(
            self._spec.base_url,
            self._spec.path_template or "/{quality}/{video_id}",
            placeholders,
        )
        return self._media(request, locator=locator)


def render_provider_url(
    base_url: str,
    path_template: str | None,
    placeholders: dict[str, str],
) -> str:
    if not path_template:
        return f"{base_url}/{placeholders['video_id']}"
    return f"{base_url}{path_template.format(**placeholders)}"
