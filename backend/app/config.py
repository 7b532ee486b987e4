from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".media-resolver"
PROVIDER_SHAPES: frozenset[str] = frozenset({"piped", "invidious", "locator", "preflight"})
QUALITY_TIERS: tuple[str, ...] = ("low", "medium", "high")
DEFAULT_TIER_HEIGHTS: dict[str, int] = {"low": 144, "medium": 480, "high": 720}
PATH_TEMPLATE_PLACEHOLDERS: tuple[str, ...] = ("video_id", "quality", "kind", "format")
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
DEFAULT_WATCH_PAGE_PROXIES: tuple[str, ...] = (
    "https://corsproxy.io/?",
    "https://api.allorigins.win/raw?url=",
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "queue_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{MEDIA_RESOLVER_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


class ProviderSpec(BaseModel):
    """
    Static description of one upstream media provider.

    `tier_heights` maps a quality tier to the rendition height the adapter aims for;
    `quality_params` maps a tier to the token a provider expects in its own requests.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    shape: Literal["piped", "invidious", "locator", "preflight"]
    base_url: str
    priority: int = 100
    enabled: bool = True
    timeout_seconds: float = Field(default=5.0, gt=0)
    method: Literal["GET", "POST"] = "GET"
    path_template: str | None = None
    check_template: str | None = None
    tier_heights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_HEIGHTS))
    quality_params: dict[str, str] = Field(default_factory=dict)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Provider name must be a non-empty string.")
        return value.strip()

    @field_validator("base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Provider base_url must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("Provider base_url must not be empty.")
        return normalized

    @field_validator("shape", mode="before")
    @classmethod
    def _normalize_shape(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Provider shape must be a string.")
        normalized = value.strip().lower()
        if normalized in PROVIDER_SHAPES:
            return normalized
        raise ValueError(f"Provider shape must be one of: {', '.join(sorted(PROVIDER_SHAPES))}.")

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Provider method must be a string.")
        return value.strip().upper()

    @field_validator("path_template", "check_template", mode="after")
    @classmethod
    def _validate_url_template(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            value.format(**{name: "x" for name in PATH_TEMPLATE_PLACEHOLDERS})
        except (AttributeError, KeyError, IndexError, ValueError) as exc:
            raise ValueError(
                "Provider URL templates may only use plain placeholders: "
                f"{', '.join(PATH_TEMPLATE_PLACEHOLDERS)}."
            ) from exc
        return value

    @field_validator("tier_heights", mode="before")
    @classmethod
    def _merge_tier_heights(cls, value: Any) -> dict[str, int]:
        merged = dict(DEFAULT_TIER_HEIGHTS)
        if value is None:
            return merged
        if not isinstance(value, dict):
            raise ValueError("Provider tier_heights must be a mapping of tier to height.")
        for raw_tier, raw_height in value.items():
            tier = str(raw_tier).strip().lower()
            if tier not in QUALITY_TIERS:
                raise ValueError(f"Unknown quality tier in tier_heights: {raw_tier}")
            merged[tier] = int(raw_height)
        return merged


def _default_providers() -> tuple[ProviderSpec, ...]:
    return (
        ProviderSpec(
            name="piped-syncpundit",
            shape="piped",
            base_url="https://pipedapi.syncpundit.io",
            priority=10,
        ),
        ProviderSpec(
            name="piped-mha",
            shape="piped",
            base_url="https://api-piped.mha.fi",
            priority=20,
        ),
        ProviderSpec(
            name="invidious-puffyan",
            shape="invidious",
            base_url="https://vid.puffyan.us/api/v1",
            priority=30,
        ),
        ProviderSpec(
            name="invidious-private-coffee",
            shape="invidious",
            base_url="https://invidious.private.coffee/api/v1",
            priority=40,
        ),
        ProviderSpec(
            name="fillyourbrain",
            shape="locator",
            base_url="https://api.fillyourbrain.org/api/youtube/video",
            priority=50,
            timeout_seconds=6.0,
            method="POST",
            quality_params={"low": "360p", "medium": "720p", "high": "1080p"},
        ),
        ProviderSpec(
            name="vevioz",
            shape="preflight",
            base_url="https://api.vevioz.com/api/button/videos",
            priority=60,
            path_template="/{quality}/{video_id}",
            quality_params={"low": "360", "medium": "360", "high": "720"},
        ),
        ProviderSpec(
            name="ytembed",
            shape="locator",
            base_url="https://ytembed.herokuapp.com/download",
            priority=70,
            timeout_seconds=6.0,
            path_template=(
                "?url=https://youtube.com/watch?v={video_id}&format=mp4&quality={quality}"
            ),
            quality_params={"low": "low", "medium": "medium", "high": "high"},
        ),
        ProviderSpec(
            name="direct-extractor",
            shape="locator",
            base_url="https://t2.vanity.pw/video",
            priority=80,
            timeout_seconds=8.0,
            path_template="/{video_id}",
        ),
    )


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `MEDIA_RESOLVER_*` environment variables (or `.env`).
    `MEDIA_RESOLVER_PROVIDERS` accepts a JSON list of provider objects and replaces
    the built-in provider chain entirely.
    """

    model_config = SettingsConfigDict(
        env_prefix="MEDIA_RESOLVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the cache database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Provider chain.
    providers: tuple[ProviderSpec, ...] = Field(
        default_factory=_default_providers,
        description="Ordered provider chain; entries are sorted by `priority` at load time.",
    )
    http_user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="User-Agent sent to every provider.",
    )

    # Video details.
    watch_page_proxies: tuple[str, ...] = Field(
        default=DEFAULT_WATCH_PAGE_PROXIES,
        description=(
            "Proxy URL prefixes used to fetch the public watch page when no provider "
            "answers a video details lookup; the watch URL is appended as-is."
        ),
    )
    info_rounds: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Passes over all video detail sources before a lookup gives up.",
    )
    info_backoff_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Linear backoff base between video detail passes (base * pass).",
    )

    # Retry and deadline policy.
    retry_budget: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per provider before falling through to the next one.",
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff base between attempts on the same provider (base * attempt).",
    )
    resolution_deadline_seconds: float = Field(
        default=45.0,
        gt=0,
        description="Default overall deadline for a single resolution.",
    )
    max_stuck_calls_per_provider: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Abandoned calls a provider may have running before the chain skips it.",
    )

    # Result cache.
    success_ttl_seconds: int = Field(
        default=6 * 3600,
        ge=1,
        description="Lifetime of a cached resolved locator.",
    )
    failure_ttl_seconds: int = Field(
        default=120,
        ge=1,
        description="Lifetime of a cached terminal failure (bounds repeated chain walks).",
    )
    ledger_retention_seconds: int = Field(
        default=24 * 3600,
        ge=1,
        description="Age after which attempt ledger rows are removed by `media-cache purge`.",
    )

    # Background queue.
    queue_enabled: bool = Field(
        default=True,
        description="Start background resolution workers with the API process.",
    )
    queue_worker_count: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Number of background resolution worker threads.",
    )
    queue_marker_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Upper bound on how long an in-flight marker suppresses duplicate jobs.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("providers", mode="after")
    @classmethod
    def _order_providers(cls, value: tuple[ProviderSpec, ...]) -> tuple[ProviderSpec, ...]:
        seen: set[str] = set()
        for spec in value:
            if spec.name in seen:
                raise ValueError(f"Duplicate provider name: {spec.name}")
            seen.add(spec.name)
        enabled = [spec for spec in value if spec.enabled]
        return tuple(sorted(enabled, key=lambda spec: spec.priority))

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MEDIA_RESOLVER_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("MEDIA_RESOLVER_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("http_user_agent", mode="before")
    @classmethod
    def _normalize_user_agent(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MEDIA_RESOLVER_HTTP_USER_AGENT must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("MEDIA_RESOLVER_HTTP_USER_AGENT must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if not settings.providers:
        raise ValueError(
            "Invalid provider configuration: MEDIA_RESOLVER_PROVIDERS enables no providers."
        )
    return settings
