"""List dead-lettered notifications for operators.

Usage:
    python -m cicero.cli.dead_letters --limit 20
"""

import argparse
import asyncio
import sys
from typing import Sequence

from rich.console import Console
from rich.table import Table

from cicero.database.database import sessionmanager
from cicero.main.config import get_settings
from cicero.outbox.outbox_models import OutboxEvent
from cicero.outbox.outbox_repo import outbox_transaction


def render_dead_letters(events: Sequence[OutboxEvent], console: Console) -> None:
    if not events:
        console.print("No dead-lettered notifications.")
        return

    table = Table(title=f"Dead-lettered notifications ({len(events)})")
    table.add_column("id", justify="right")
    table.add_column("client")
    table.add_column("destination")
    table.add_column("attempts", justify="right")
    table.add_column("last attempt")
    table.add_column("error")

    for event in events:
        table.add_row(
            str(event.id),
            event.client_id,
            event.destination,
            f"{event.attempt_count}/{event.max_attempts}",
            event.last_attempt_at.isoformat() if event.last_attempt_at else "-",
            event.error_message or "-",
        )

    console.print(table)


async def fetch_dead_letters(limit: int) -> list[OutboxEvent]:
    settings = get_settings()
    sessionmanager.init(settings.database_url)
    try:
        async with outbox_transaction() as repo:
            return await repo.list_dead_letters(limit=limit)
    finally:
        await sessionmanager.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="List dead-lettered notifications.")
    parser.add_argument("--limit", type=int, default=50, help="Maximum rows to show")
    args = parser.parse_args(argv)

    if args.limit <= 0:
        print("--limit must be positive", file=sys.stderr)
        return 2

    events = asyncio.run(fetch_dead_letters(args.limit))
    render_dead_letters(events, Console())
    return 0


if __name__ == "__main__":
    sys.exit(main())
