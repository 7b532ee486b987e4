from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from backend.app.services.media_types import FailureKind
from backend.app.services.providers.base import ProviderError, as_dict

NOT_FOUND_STATUS_CODES: frozenset[int] = frozenset({404, 410})


@dataclass(frozen=True)
class ProviderHttpResponse:
    status_code: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ProviderHttpClient:
    """
    Minimal blocking HTTP client shared by all provider adapters.

    Transport failures are raised as `ProviderError`; HTTP error statuses are returned
    so callers can decide how a given provider's status codes should be read.
    """

    def __init__(self, *, user_agent: str) -> None:
        self._user_agent = user_agent

    def request(
        self,
        method: str,
        url: str,
        *,
        timeout_seconds: float,
        headers: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> ProviderHttpResponse:
        request_headers = {"user-agent": self._user_agent, "accept": "application/json"}
        if headers:
            request_headers.update({key.lower(): value for key, value in headers.items()})
        data: bytes | None = None
        if json_body is not None:
            data = json.dumps(dict(json_body)).encode("utf-8")
            request_headers["content-type"] = "application/json"

        request = Request(url, data=data, headers=request_headers, method=method.upper())
        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                raw_body = response.read().decode("utf-8", errors="replace")
                response_headers = dict(response.headers.items())
        except HTTPError as exc:
            status_code = int(exc.code)
            raw_body = exc.read().decode("utf-8", errors="replace")
            response_headers = dict(exc.headers.items()) if exc.headers is not None else {}
        except TimeoutError as exc:
            raise ProviderError(
                FailureKind.TIMEOUT,
                f"request timed out after {timeout_seconds:.1f}s",
            ) from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise ProviderError(
                    FailureKind.TIMEOUT,
                    f"connect timed out after {timeout_seconds:.1f}s",
                ) from exc
            raise ProviderError(
                FailureKind.UNREACHABLE,
                f"connection failed: {exc.reason}",
            ) from exc
        except OSError as exc:
            raise ProviderError(FailureKind.UNREACHABLE, f"connection failed: {exc}") from exc

        return ProviderHttpResponse(
            status_code=status_code,
            body=raw_body,
            headers=response_headers,
        )

    def fetch_json(
        self,
        method: str,
        url: str,
        *,
        timeout_seconds: float,
        headers: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = self.request(
            method,
            url,
            timeout_seconds=timeout_seconds,
            headers=headers,
            json_body=json_body,
        )
        raise_for_status(response)
        return decode_json_object(response.body)


def raise_for_status(response: ProviderHttpResponse) -> None:
    if response.ok:
        return
    if response.status_code in NOT_FOUND_STATUS_CODES:
        raise ProviderError(FailureKind.NOT_FOUND, f"provider returned {response.status_code}")
    raise ProviderError(FailureKind.UNREACHABLE, f"provider returned {response.status_code}")


def decode_json_object(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        raise ProviderError(FailureKind.INVALID_RESPONSE, "empty response body")
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise ProviderError(FailureKind.INVALID_RESPONSE, "response body is not JSON") from exc
    if not isinstance(parsed, dict):
        raise ProviderError(FailureKind.INVALID_RESPONSE, "response body is not a JSON object")
    return as_dict(parsed)
