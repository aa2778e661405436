#!/usr/bin/env python3
"""CLI script to run one sync pass for an installation.

Usage:
    uv run python scripts/run_sync.py --installation jira-main
    uv run python scripts/run_sync.py --installation jira-main --direction import --actor ops:alice

Connects directly to the database using DATABASE_URL from environment or .env file.
Runs the pass through PMIntegrationService (so a disabled installation is
refused) and prints the resulting SyncLog summary.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.pmsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(installation_id: str, direction: str, actor: str) -> int:
    """Run one pass and print its summary. Returns the process exit code."""
    from src.pmsync.config import get_settings
    from src.pmsync.core.database import close_db, get_session, init_db
    from src.pmsync.core.exceptions import PMSyncError
    from src.pmsync.core.logging import configure_structlog
    from src.pmsync.services.llm import get_llm_service
    from src.pmsync.sync.advisor import LLMConflictAdvisor
    from src.pmsync.sync.repository import (
        SQLEntityRepository,
        SQLInstallationStore,
        SQLSyncLogStore,
    )
    from src.pmsync.sync.schemas import SyncStatus
    from src.pmsync.sync.service import build_sync_service
    from src.pmsync.sync.store import EntityRegistry

    configure_structlog()
    settings = get_settings()
    await init_db()

    try:
        llm_service = get_llm_service()
        advisor = LLMConflictAdvisor(llm_service) if llm_service.router is not None else None

        service = build_sync_service(
            registry=EntityRegistry(
                SQLEntityRepository(entity_type, session_factory=get_session)
                for entity_type in settings.get_entity_types()
            ),
            installations=SQLInstallationStore(session_factory=get_session),
            logs=SQLSyncLogStore(session_factory=get_session),
            advisor=advisor,
            settings=settings,
        )
        log = await service.perform_sync(installation_id, direction, actor=actor)
    except PMSyncError as exc:
        print(f"Sync refused: {exc}", file=sys.stderr)
        return 2
    finally:
        await close_db()

    print(f"Sync {log.status.value} for {installation_id} ({log.direction.value}):")
    print(f"  Imported:  {log.items_imported}")
    print(f"  Exported:  {log.items_exported}")
    print(f"  Conflicts: {log.conflicts_detected} ({log.conflicts_resolved} resolved)")
    print(f"  Duration:  {log.duration_ms} ms")
    for error in log.errors:
        target = f" [{error.entity_type}:{error.external_id}]" if error.external_id else ""
        print(f"  Error ({error.scope.value}){target}: {error.message}")
    for record in log.unresolved_conflicts:
        print(
            f"  Unresolved: {record.conflict.entity_type}:{record.conflict.external_id} "
            f"field={record.conflict.field} suggestion={record.ai_suggestion!r}"
        )

    return 1 if log.status == SyncStatus.FAILED else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one PM sync pass")
    parser.add_argument("--installation", required=True, help="Installation ID")
    parser.add_argument(
        "--direction",
        default="bidirectional",
        choices=["bidirectional", "import", "export"],
        help="Sync direction (default: bidirectional)",
    )
    parser.add_argument("--actor", default="cli:run_sync", help="Actor recorded on the SyncLog")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.installation, args.direction, args.actor)))


if __name__ == "__main__":
    main()
