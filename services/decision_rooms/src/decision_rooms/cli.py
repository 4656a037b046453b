"""Typer-based CLI for Decision Rooms operations."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from .app import build_data_store, load_catalog
from .badges import BadgeEngine
from .config import get_settings
from .data import DataStoreProtocol, PostgresDataStore
from .quests import QuestCatalog, QuestValidationError
from .sweeper import close_inactive_rooms

app = typer.Typer(help="Decision Rooms CLI")


def _store(dsn: Optional[str]) -> DataStoreProtocol:
    if dsn:
        return PostgresDataStore(dsn)
    return build_data_store(get_settings())


@app.command("close-inactive")
def close_inactive(
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Inactivity threshold (INACTIVE_ROOM_DAYS)"),
    dsn: Optional[str] = typer.Option(None, "--dsn", envvar="DATABASE_URL", help="PostgreSQL DSN"),
) -> None:
    """Close IN_PROGRESS rooms without activity for the given number of days."""

    settings = get_settings()
    closed = close_inactive_rooms(_store(dsn), inactive_days=days or settings.inactive_room_days)
    for room_id in closed:
        typer.echo(room_id)
    typer.echo(f"Closed {len(closed)} inactive rooms.")


@app.command("quests")
def list_quests(
    path: Optional[Path] = typer.Option(None, "--path", help="Directory with quest YAML files (QUEST_CATALOG_PATH)"),
) -> None:
    """Validate the quest catalog and print its contents."""

    try:
        catalog = QuestCatalog.from_directory(path) if path else load_catalog(get_settings())
    except QuestValidationError as exc:
        typer.echo(f"Invalid quest: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if not len(catalog):
        typer.echo("No quests found")
        raise typer.Exit(code=0)
    for quest in catalog.list_quests():
        typer.echo(f"{quest.id}\t{quest.quest_type}\t{quest.min_members}-{quest.max_members}\t{quest.name}")


@app.command("evaluate-badges")
def evaluate_badges(
    room_id: str,
    dsn: Optional[str] = typer.Option(None, "--dsn", envvar="DATABASE_URL", help="PostgreSQL DSN"),
) -> None:
    """Re-run badge evaluation for a completed room; existing awards are kept as-is."""

    settings = get_settings()
    engine = BadgeEngine(_store(dsn), load_catalog(settings))
    awarded = engine.evaluate(room_id)
    for award in awarded:
        typer.echo(f"{award.participant_id}\t{award.badge_type}")
    typer.echo(f"Awarded {len(awarded)} new badges.")


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
