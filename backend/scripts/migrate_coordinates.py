#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from pettapp.config import configure_logging, load_settings  # noqa: E402
from pettapp.db.base import open_store  # noqa: E402
from pettapp.errors import ConflictError, MigrationStepFailedError, StoreUnavailableError  # noqa: E402
from pettapp.locations import NormalizePolicy  # noqa: E402
from pettapp.services.geo_migration import GEO_FIELDS, CoordinateMigration  # noqa: E402

logger = logging.getLogger("migrate_coordinates")


def print_human(report: Dict[str, Any]) -> None:
    print(f"{report['collection']}.{report['field']} (policy={report['policy']})")
    print(f"  Indexes before: {', '.join(index['name'] for index in report['indexes_before']) or '-'}")
    print(f"  Dropped: {', '.join(report['dropped']) or '-'}")
    print(
        f"  Documents: scanned={report['scanned']} kept={report['kept']} "
        f"reprojected={report['reprojected']} removed={report['removed']}"
    )
    index = report["index"]
    print(f"  Index now: {index['name']} key={index['key']} sparse={index['sparse']}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Move stored coordinates to GeoJSON and rebuild 2dsphere indexes.")
    parser.add_argument("--collection", choices=[*GEO_FIELDS, "all"], default="all")
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in NormalizePolicy],
        default=NormalizePolicy.REPROJECT.value,
        help="reproject legacy {latitude, longitude} values, or drop them",
    )
    parser.add_argument(
        "--force-unlock",
        action="store_true",
        help="break a lock left behind by a dead run before migrating",
    )
    parser.add_argument("--json-out", default="", help="Optional path to write JSON report.")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    collections = list(GEO_FIELDS) if args.collection == "all" else [args.collection]

    reports = []
    try:
        with open_store(settings) as store:
            for name in collections:
                migration = CoordinateMigration(
                    store,
                    GEO_FIELDS[name],
                    policy=NormalizePolicy(args.policy),
                    lock_ttl_seconds=settings.migration_lock_ttl_s,
                )
                if args.force_unlock:
                    migration.break_lock()
                report = migration.run().to_dict()
                print_human(report)
                reports.append(report)
    except MigrationStepFailedError as exc:
        logger.error("%s; the migration is safe to re-run", exc)
        return 1
    except ConflictError as exc:
        logger.error("%s; pass --force-unlock if no other run is alive", exc)
        return 2
    except StoreUnavailableError as exc:
        logger.error("store unavailable: %s", exc)
        return 3

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(reports, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
