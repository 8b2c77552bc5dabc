#!/usr/bin/env python3
"""CLI for triggering enrichment and CRM sync runs.

Usage:
    python scripts/signalhub_cli.py init-db
    python scripts/signalhub_cli.py enrich prospect p1
    python scripts/signalhub_cli.py enrich-batch prospect p1 p2 p3 --concurrency 2
    python scripts/signalhub_cli.py sync conn-1 contact --direction bidirectional
    python scripts/signalhub_cli.py incremental-sync conn-1 contact --since 2026-01-01T00:00:00Z
    python scripts/signalhub_cli.py resolve-conflict <conflict-id> use_crm
    python scripts/signalhub_cli.py test-connection conn-1

Connects directly to the database using DATABASE_URL from environment or .env file.
Every command prints its structured result as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.signalhub
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(args: argparse.Namespace) -> int:
    """Execute one CLI command; returns the process exit code."""
    from src.signalhub.connectors.schemas import EntityType, SyncDirection
    from src.signalhub.core.clock import parse_datetime
    from src.signalhub.core.database import close_db, init_db
    from src.signalhub.core.logging import configure_structlog
    from src.signalhub.enrichment.schemas import EntityKind, EntityRef, RunStatus
    from src.signalhub.service import build_service
    from src.signalhub.sync.schemas import ConflictResolution, SyncJobStatus

    configure_structlog()
    service = build_service()
    try:
        if args.command == "init-db":
            await init_db()
            print("Database tables created")
            return 0

        if args.command == "enrich":
            ref = EntityRef(entity_type=EntityKind(args.entity_type), entity_id=args.entity_id)
            result = await service.enrich_entity(ref)
            print(result.model_dump_json(indent=2))
            return 0 if result.status != RunStatus.FAILED else 1

        if args.command == "enrich-batch":
            refs = [
                EntityRef(entity_type=EntityKind(args.entity_type), entity_id=entity_id)
                for entity_id in args.entity_ids
            ]
            results = await service.enrich_batch(refs, args.concurrency)
            for result in results:
                print(result.model_dump_json(indent=2))
            return 0 if all(r.status != RunStatus.FAILED for r in results) else 1

        if args.command == "sync":
            job = await service.sync_entity_type(
                args.connection_id, EntityType(args.entity_type), SyncDirection(args.direction)
            )
            print(job.model_dump_json(indent=2))
            return 0 if job.status == SyncJobStatus.COMPLETED else 1

        if args.command == "incremental-sync":
            since = parse_datetime(args.since) if args.since else None
            job = await service.incremental_sync(args.connection_id, EntityType(args.entity_type), since)
            print(job.model_dump_json(indent=2))
            return 0 if job.status == SyncJobStatus.COMPLETED else 1

        if args.command == "resolve-conflict":
            conflict = await service.resolve_conflict(args.conflict_id, ConflictResolution(args.resolution))
            print(conflict.model_dump_json(indent=2))
            return 0

        if args.command == "test-connection":
            ok, error = await service.test_connection(args.connection_id)
            print(f"ok={ok}" + (f" error={error}" if error else ""))
            return 0 if ok else 1
    finally:
        await close_db()
    return 2


def main() -> None:
    parser = argparse.ArgumentParser(description="SignalHub enrichment and CRM sync triggers")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables (development)")

    enrich = sub.add_parser("enrich", help="Enrich one prospect or account")
    enrich.add_argument("entity_type", choices=["prospect", "account"])
    enrich.add_argument("entity_id")

    batch = sub.add_parser("enrich-batch", help="Enrich several entities")
    batch.add_argument("entity_type", choices=["prospect", "account"])
    batch.add_argument("entity_ids", nargs="+")
    batch.add_argument("--concurrency", type=int, default=None, help="Parallel entities")

    entity_types = ["contact", "lead", "account", "opportunity", "task", "event", "note"]

    sync = sub.add_parser("sync", help="Full sync of one entity type")
    sync.add_argument("connection_id")
    sync.add_argument("entity_type", choices=entity_types)
    sync.add_argument("--direction", choices=["pull", "push", "bidirectional"], default="pull")

    incremental = sub.add_parser("incremental-sync", help="Pull records modified since a timestamp")
    incremental.add_argument("connection_id")
    incremental.add_argument("entity_type", choices=entity_types)
    incremental.add_argument("--since", default=None, help="ISO-8601 timestamp (default: last sync)")

    resolve = sub.add_parser("resolve-conflict", help="Resolve an open update conflict")
    resolve.add_argument("conflict_id")
    resolve.add_argument("resolution", choices=["use_internal", "use_crm"])

    test = sub.add_parser("test-connection", help="Validate a connection's credentials")
    test.add_argument("connection_id")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
