from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict, dataclass, field
from typing import Any

from sandboxproxy.core.config import get_settings
from sandboxproxy.persistence.db import SessionLocal
from sandboxproxy.persistence.repos import sandboxes as sandboxes_repo
from sandboxproxy.providers.orchestrator.base import Orchestrator
from sandboxproxy.providers.orchestrator.factory import get_orchestrator


@dataclass
class ReconcileReport:
    # In the orchestrator but without an ownership record.
    orphaned: list[dict[str, str]] = field(default_factory=list)
    # Ownership record whose orchestrator object is gone.
    leaked: list[dict[str, str]] = field(default_factory=list)
    matched: int = 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compare orchestrator sandboxes with ownership records (report only)"
    )
    parser.add_argument("--json", action="store_true", help="Emit the report as JSON")
    return parser


def _object_key(obj: dict[str, Any]) -> tuple[str, str] | None:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return namespace, name


async def build_report(orchestrator: Orchestrator) -> ReconcileReport:
    settings = get_settings()
    async with SessionLocal() as session:
        rows = await sandboxes_repo.list_all_sandboxes(session)
    records = {(sandbox.namespace, sandbox.k8s_resource_name): username for sandbox, username in rows}

    objects: set[tuple[str, str]] = set()
    for obj in await orchestrator.list_sandboxes():
        key = _object_key(obj)
        # Only tenant namespaces are ours to account for.
        if key is None or not key[0].startswith(settings.tenant_namespace_prefix):
            continue
        objects.add(key)

    report = ReconcileReport()
    for namespace, name in sorted(objects - records.keys()):
        report.orphaned.append({"namespace": namespace, "name": name})
    for namespace, name in sorted(records.keys() - objects):
        report.leaked.append({"namespace": namespace, "name": name, "owner": records[(namespace, name)]})
    report.matched = len(objects & records.keys())
    return report


async def _run(args: argparse.Namespace) -> int:
    report = await build_report(get_orchestrator())
    if args.json:
        print(json.dumps(asdict(report), indent=2))
    else:
        print(f"matched: {report.matched}")
        print(f"orphaned (orchestrator only): {len(report.orphaned)}")
        for item in report.orphaned:
            print(f"  {item['namespace']}/{item['name']}")
        print(f"leaked (database only): {len(report.leaked)}")
        for item in report.leaked:
            print(f"  {item['namespace']}/{item['name']} owner={item['owner']}")
    # Non-zero exit lets cron jobs alert on drift.
    return 0 if not report.orphaned and not report.leaked else 2


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface reconciliation failures clearly
        print(f"reconcile_sandboxes failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
