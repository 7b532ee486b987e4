from __future__ import annotations

import argparse
import json
from pathlib import Path

from backend.app.main import app


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write the Media Resolver OpenAPI schema.")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("openapi") / "openapi.json",
        help="Destination file (default: openapi/openapi.json).",
    )
    return parser.parse_args()


def main() -> None:
    schema_path: Path = _parse_args().output
    schema_path.parent.mkdir(parents=True, exist_ok=True)
    schema_path.write_text(json.dumps(app.openapi(), indent=2), encoding="utf-8")
    print(f"Wrote OpenAPI schema to {schema_path}")


if __name__ == "__main__":
    main()
