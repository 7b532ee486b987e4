from __future__ import annotations

import argparse
from datetime import timedelta

from backend.app.dependencies import get_database, get_media_service, get_resolver, get_settings
from backend.app.repositories.attempt_ledger_repository import AttemptLedgerRepository
from backend.app.repositories.common import utc_now
from backend.app.repositories.resolution_cache_repository import ResolutionCacheRepository
from backend.app.services.media_types import MediaResolutionError


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Resolve media locators and inspect the local resolution cache.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve one media locator now.")
    _add_request_arguments(resolve_parser)
    resolve_parser.add_argument(
        "--deadline-seconds",
        type=float,
        default=None,
        help="Overall deadline for the resolution (defaults to the configured value).",
    )

    attempts_parser = subparsers.add_parser(
        "attempts",
        help="Show recorded provider attempts for one media key.",
    )
    _add_request_arguments(attempts_parser)
    attempts_parser.add_argument("--limit", type=int, default=50, help="Rows to show.")

    subparsers.add_parser("providers", help="List the provider chain in priority order.")
    subparsers.add_parser(
        "purge",
        help="Delete expired cache entries and attempt rows past the retention window.",
    )

    return parser.parse_args()


def _add_request_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--video-id", required=True, help="11-character video id.")
    parser.add_argument("--kind", required=True, choices=["audio", "video"])
    parser.add_argument("--quality-tier", choices=["low", "medium", "high"], default=None)


def main() -> None:
    args = _parse_args()

    if args.command == "resolve":
        service = get_media_service()
        try:
            result = service.resolve(
                args.video_id,
                args.kind,
                args.quality_tier,
                deadline_seconds=args.deadline_seconds,
            )
        except MediaResolutionError as exc:
            print(f"Resolution failed: {exc}")
            raise SystemExit(1) from exc
        finally:
            get_resolver().close()
        print(f"Locator: {result.media.locator}")
        print(f"Provider: {result.media.source_provider}")
        print(f"MIME hint: {result.media.mime_hint or '-'}")
        print(f"Cache hit: {'yes' if result.cache_hit else 'no'} attempts={result.attempts}")
        return

    if args.command == "attempts":
        records = get_media_service().list_attempts(
            args.video_id,
            args.kind,
            args.quality_tier,
            limit=args.limit,
        )
        if not records:
            print("No attempts recorded.")
            return
        print("started_at\tprovider\tattempt\toutcome\tduration_ms")
        for record in records:
            outcome = "success" if record.succeeded else getattr(record.outcome, "kind", "failure")
            print(
                "\t".join(
                    [
                        record.started_at.isoformat(),
                        record.provider,
                        str(record.attempt_number),
                        str(outcome),
                        str(record.duration_ms),
                    ]
                )
            )
        return

    if args.command == "providers":
        for position, name in enumerate(get_media_service().provider_names(), start=1):
            print(f"{position}\t{name}")
        return

    if args.command == "purge":
        database = get_database()
        removed = ResolutionCacheRepository(database).purge_expired()
        cutoff = utc_now() - timedelta(seconds=get_settings().ledger_retention_seconds)
        removed_attempts = AttemptLedgerRepository(database).purge_older_than(cutoff)
        print(f"Removed {removed} expired cache entries.")
        print(f"Removed {removed_attempts} attempt records past retention.")
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
