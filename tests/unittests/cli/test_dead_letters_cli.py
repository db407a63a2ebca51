from datetime import datetime, timezone
from unittest.mock import patch

from rich.console import Console

from cicero.cli.dead_letters import main, render_dead_letters
from cicero.outbox.outbox_models import OutboxEvent, OutboxStatus


def _dead_letter() -> OutboxEvent:
    now = datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)
    return OutboxEvent(
        id=42,
        client_id="POLRES_A",
        destination="120363025@g.us",
        message="hello",
        idempotency_key="abc",
        status=OutboxStatus.DEAD_LETTER,
        attempt_count=5,
        max_attempts=5,
        next_attempt_at=now,
        created_at=now,
        last_attempt_at=now,
        error_message="RuntimeError: gateway down",
    )


def test_render_lists_dead_letters():
    console = Console(record=True, width=200)

    render_dead_letters([_dead_letter()], console)

    output = console.export_text()
    assert "POLRES_A" in output
    assert "5/5" in output
    assert "RuntimeError: gateway down" in output


def test_render_empty():
    console = Console(record=True)

    render_dead_letters([], console)

    assert "No dead-lettered notifications." in console.export_text()


def test_main_rejects_non_positive_limit():
    with patch("cicero.cli.dead_letters.fetch_dead_letters") as fetch:
        assert main(["--limit", "0"]) == 2
    fetch.assert_not_called()
