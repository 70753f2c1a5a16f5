#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from pettapp.config import configure_logging, load_settings  # noqa: E402
from pettapp.db.base import open_store  # noqa: E402
from pettapp.services.geo_migration import GEO_FIELDS, diagnose  # noqa: E402


def print_human(report: Dict[str, Any]) -> None:
    print(f"{report['collection']}.{report['field']}")
    print("  Indexes:")
    for index in report["indexes"]:
        print(f"  - {index['name']}: key={index['key']} sparse={index['sparse']}")
    geo_index = report["geo_index"]
    if geo_index is None:
        print("  No 2dsphere index on the field; geo searches will fail.")
    elif not geo_index["sparse"]:
        print(f"  {geo_index['name']} is not sparse.")
    shapes = report["shapes"]
    print(
        f"  Locations: geojson={shapes['geojson']} legacy={shapes['legacy']} "
        f"malformed={shapes['malformed']} absent={shapes['absent']}"
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Report geo indexes and stored location shapes (read-only).")
    parser.add_argument("--collection", choices=[*GEO_FIELDS, "all"], default="all")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON report.")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    collections = list(GEO_FIELDS) if args.collection == "all" else [args.collection]

    with open_store(settings) as store:
        reports = [diagnose(store, GEO_FIELDS[name]) for name in collections]
    for report in reports:
        print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(reports, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    needs_migration = any(
        report["geo_index"] is None or report["shapes"]["legacy"] or report["shapes"]["malformed"]
        for report in reports
    )
    return 1 if needs_migration else 0


if __name__ == "__main__":
    raise SystemExit(main())
