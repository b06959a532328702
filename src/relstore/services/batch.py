"""Atomic multi-entity save with dry-run support."""

from collections.abc import Sequence

import structlog
from pydantic import BaseModel

from relstore.errors import TransactionError
from relstore.models.enums import TransactionState
from relstore.services.database import Database
from relstore.services.entity import Entity, EntityState


class BatchSaveResult(BaseModel):
    """Outcome of a successful batch save."""

    state: TransactionState
    total: int
    saved: int
    dry_run: bool = False

    model_config = {"frozen": True}


class BatchSaver:
    """Saves a sequence of entities inside one transaction.

    A saver is single use: NONE -> STARTED -> COMMITTED or ROLLED_BACK.
    """

    def __init__(
        self,
        database: Database,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._database = database
        self._state = TransactionState.NONE
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def state(self) -> TransactionState:
        return self._state

    def save(self, entities: Sequence[Entity], dry_run: bool = False) -> BatchSaveResult:
        """Save every entity, or none of them.

        Entities are saved in order. The first failure rolls the transaction
        back and is re-raised; later entities are never attempted. With
        ``dry_run`` every save runs and the transaction is then rolled back.
        Whenever the transaction is rolled back, each attempted entity gets
        back the in-memory state it had before the batch.

        Args:
            entities: Entities to save.
            dry_run: Roll back instead of committing.

        Returns:
            BatchSaveResult with the final transaction state.

        Raises:
            TransactionError: If the transaction cannot be started or committed,
                or this saver has already been used.
            SaveError: The first failing entity's error; ``error.entity`` is
                that entity.
        """
        if self._state is not TransactionState.NONE:
            raise TransactionError(f"Batch saver already used (state: {self._state.value})")

        self._database.begin()
        self._state = TransactionState.STARTED
        self._logger.debug("batch_started", total=len(entities), dry_run=dry_run)

        # Keyed by identity; an entity listed twice keeps its pre-batch state.
        snapshots: dict[int, tuple[Entity, EntityState]] = {}
        saved = 0
        for position, entity in enumerate(entities):
            snapshots.setdefault(id(entity), (entity, entity._snapshot_state()))
            try:
                if entity.save():
                    saved += 1
            except Exception as exc:
                self._logger.warning(
                    "batch_entity_failed",
                    table=entity.get_table_name(),
                    position=position,
                    error=str(exc),
                )
                self._rollback(snapshots, exc)
                raise

        if dry_run:
            self._rollback(snapshots)
            self._logger.info("batch_dry_run", total=len(entities), saved=saved)
            return BatchSaveResult(state=self._state, total=len(entities), saved=saved, dry_run=True)

        try:
            self._database.commit()
        except TransactionError:
            self._state = TransactionState.ROLLED_BACK
            self._restore(snapshots)
            self._logger.error("batch_commit_failed", total=len(entities))
            raise

        self._state = TransactionState.COMMITTED
        self._logger.info("batch_committed", total=len(entities), saved=saved)
        return BatchSaveResult(state=self._state, total=len(entities), saved=saved)

    def _rollback(self, snapshots: dict[int, tuple[Entity, EntityState]], error: Exception | None = None) -> None:
        try:
            self._database.rollback()
        except TransactionError as rollback_error:
            self._logger.error("batch_rollback_failed", error=str(rollback_error))
            if error is None:
                raise
            error.add_note(f"Rollback also failed: {rollback_error}")
        self._state = TransactionState.ROLLED_BACK
        self._restore(snapshots)
        self._logger.info("batch_rolled_back", attempted=len(snapshots))

    def _restore(self, snapshots: dict[int, tuple[Entity, EntityState]]) -> None:
        for entity, state in snapshots.values():
            entity._restore_state(state)


def save_many(database: Database, entities: Sequence[Entity], dry_run: bool = False) -> BatchSaveResult:
    """Save ``entities`` atomically with a fresh BatchSaver."""
    return BatchSaver(database).save(entities, dry_run=dry_run)
