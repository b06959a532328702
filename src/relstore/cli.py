"""relstore command line interface.

Provides schema reconciliation for entity types and a helper for checking
index specifications.
"""

import importlib
from typing import List, Optional

import structlog
import typer

from relstore.config import get_settings
from relstore.errors import RelstoreError
from relstore.logging import configure_logging
from relstore.models.schema import parse_index
from relstore.services.entity import Entity
from relstore.services.factory import create_database
from relstore.services.schema_manager import SchemaManager

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="relstore",
    help="""Manage relstore tables.

Examples:

  # Create or conform the tables of two entity types
  relstore migrate myapp.models:Post myapp.models:Tag

  # Check how an index declaration is parsed
  relstore parse-index "UNIQUE KEY slug (slug(191))"
""",
    rich_markup_mode="markdown",
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level (default: RELSTORE_LOG_LEVEL or INFO)",
    ),
) -> None:
    """Configure logging before any command runs."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, fmt=settings.log_format)


def load_entity_type(reference: str) -> type[Entity]:
    """Resolve ``package.module:ClassName`` to an Entity subclass.

    Raises:
        typer.BadParameter: If the reference is malformed, cannot be imported,
            or does not name an Entity subclass.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"Expected MODULE:Class, got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"Cannot import {module_name}: {exc}") from exc

    entity_type = getattr(module, attribute, None)
    if not isinstance(entity_type, type) or not issubclass(entity_type, Entity):
        raise typer.BadParameter(f"{reference} is not an Entity subclass")
    return entity_type


@app.command()
def migrate(
    entities: List[str] = typer.Argument(
        ...,
        help="Entity types to reconcile, as MODULE:Class",
    ),
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        "-d",
        help="SQLAlchemy database URL (default: RELSTORE_DATABASE_URL)",
    ),
) -> None:
    """Create missing tables and add missing columns and indexes."""
    entity_types = [load_entity_type(reference) for reference in entities]

    with create_database(database_url) as database:
        manager = SchemaManager(database)
        for entity_type in entity_types:
            try:
                results = entity_type.ensure_table(database, manager)
            except RelstoreError as exc:
                logger.error("migration_failed", entity=entity_type.__name__, error=exc.message)
                typer.echo(f"{entity_type.__name__}: {exc.message}", err=True)
                raise typer.Exit(1)

            for result in results:
                if result.created:
                    typer.echo(f"{result.table}: created")
                elif result.changed:
                    added = [*result.added_columns, *result.added_indexes]
                    typer.echo(f"{result.table}: added {', '.join(added)}")
                else:
                    typer.echo(f"{result.table}: up to date")


@app.command("parse-index")
def parse_index_command(
    spec: str = typer.Argument(
        ...,
        help="Index specification, e.g. \"KEY author (author_id)\"",
    ),
) -> None:
    """Show how an index specification is parsed."""
    parsed = parse_index(spec)
    if parsed is None:
        typer.echo(f"Could not parse index: {spec}", err=True)
        raise typer.Exit(1)

    typer.echo(f"kind: {parsed.kind.value}")
    typer.echo(f"name: {parsed.name}")
    typer.echo(f"columns: {', '.join(parsed.columns)}")


@app.command()
def version() -> None:
    """Show version information."""
    from relstore import __version__

    typer.echo(f"relstore {__version__}")
