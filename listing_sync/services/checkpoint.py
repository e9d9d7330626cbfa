# listing_sync/services/checkpoint.py
"""
Resume state of an apply run and where it is persisted.

The run state is one of NotStarted, InProgress(checkpoint) or Completed.
Transitions are plain functions returning new values; the checkpoint held
by an InProgress state is never mutated in place.

Stores persist checkpoints keyed by the source file's content hash. A
checkpoint is only meaningful for the exact file it was written for.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from listing_sync.core.exceptions import CheckpointError
from listing_sync.database import Base, create_engine, create_session_factory, get_session
from listing_sync.models.apply_checkpoint import ApplyCheckpoint
from listing_sync.schemas.checkpoint import Checkpoint, FailedListing

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(days=7)


# Run state

@dataclass(frozen=True)
class NotStarted:
    pass


@dataclass(frozen=True)
class InProgress:
    checkpoint: Checkpoint


@dataclass(frozen=True)
class Completed:
    checkpoint: Checkpoint


RunState = Union[NotStarted, InProgress, Completed]


@dataclass(frozen=True)
class ItemOutcome:
    """Result of applying one work item"""
    change_id: str
    listing_id: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def resume_state(checkpoint: Optional[Checkpoint], file_hash: str) -> RunState:
    """A stored checkpoint only resumes the run for the same content hash"""
    if checkpoint is None:
        return NotStarted()
    if checkpoint.file_hash != file_hash:
        logger.warning(
            f"Ignoring checkpoint for {checkpoint.file_hash}; current file hash is {file_hash}"
        )
        return NotStarted()
    return InProgress(checkpoint)


def begin(
    state: RunState,
    file_hash: str,
    file_name: str,
    total_listings: int,
    accepted_change_ids: Iterable[str],
) -> InProgress:
    accepted = list(accepted_change_ids)
    if isinstance(state, InProgress):
        return InProgress(state.checkpoint.model_copy(update={
            "accepted_change_ids": accepted,
            "timestamp": time.time(),
        }))
    return InProgress(Checkpoint(
        file_hash=file_hash,
        file_name=file_name,
        total_listings=total_listings,
        accepted_change_ids=accepted,
        timestamp=time.time(),
    ))


def should_skip(state: RunState, listing_id: int, change_id: str) -> bool:
    """
    True when an earlier run already handled the item.

    Items with a listing ID are skipped once attempted, unless the attempt
    failed. Items without one are skipped once they succeeded.
    """
    if not isinstance(state, InProgress):
        return False
    checkpoint = state.checkpoint
    if listing_id:
        return listing_id in checkpoint.processed_listing_ids and listing_id not in checkpoint.failed_ids()
    return change_id in checkpoint.processed_change_ids


def record_batch(state: InProgress, outcomes: Iterable[ItemOutcome]) -> InProgress:
    checkpoint = state.checkpoint
    processed: List[int] = list(checkpoint.processed_listing_ids)
    processed_changes: List[str] = list(checkpoint.processed_change_ids)
    failed: Dict[int, FailedListing] = {f.listing_id: f for f in checkpoint.failed_listing_ids if f.listing_id}
    # ID-less failures are keyed by their change ID prefix
    unkeyed: Dict[str, FailedListing] = {
        f.error.split(":", 1)[0]: f for f in checkpoint.failed_listing_ids if not f.listing_id
    }

    for outcome in outcomes:
        if outcome.listing_id:
            if outcome.listing_id not in processed:
                processed.append(outcome.listing_id)
            if outcome.failed:
                failed[outcome.listing_id] = FailedListing(listing_id=outcome.listing_id, error=outcome.error)
            else:
                failed.pop(outcome.listing_id, None)
        elif outcome.failed:
            unkeyed[outcome.change_id] = FailedListing(listing_id=0, error=f"{outcome.change_id}: {outcome.error}")
        else:
            unkeyed.pop(outcome.change_id, None)
            if outcome.change_id not in processed_changes:
                processed_changes.append(outcome.change_id)

    return InProgress(checkpoint.model_copy(update={
        "processed_listing_ids": processed,
        "processed_change_ids": processed_changes,
        "failed_listing_ids": list(failed.values()) + list(unkeyed.values()),
        "timestamp": time.time(),
    }))


def complete(state: InProgress) -> Completed:
    return Completed(state.checkpoint)


# Stores

class CheckpointStore:
    """Persistence for checkpoints, keyed by content hash"""

    async def load(self, file_hash: str) -> Optional[Checkpoint]:
        raise NotImplementedError

    async def save(self, file_hash: str, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    async def clear(self, file_hash: str) -> None:
        raise NotImplementedError

    async def cleanup_old(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        """Drop checkpoints last written more than ``max_age`` ago; returns how many"""
        raise NotImplementedError


class MemoryCheckpointStore(CheckpointStore):

    def __init__(self):
        self._records: Dict[str, Checkpoint] = {}

    async def load(self, file_hash: str) -> Optional[Checkpoint]:
        return self._records.get(file_hash)

    async def save(self, file_hash: str, checkpoint: Checkpoint) -> None:
        self._records[file_hash] = checkpoint.model_copy(deep=True)

    async def clear(self, file_hash: str) -> None:
        self._records.pop(file_hash, None)

    async def cleanup_old(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        cutoff = time.time() - max_age.total_seconds()
        stale = [h for h, c in self._records.items() if c.timestamp < cutoff]
        for file_hash in stale:
            del self._records[file_hash]
        return len(stale)


class SqlCheckpointStore(CheckpointStore):
    """
    Checkpoints in the ``apply_checkpoints`` table via the async SQLAlchemy
    engine. Call ``init()`` once to create the table.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.engine = create_engine(database_url)
        self.session_factory = create_session_factory(self.engine)

    async def init(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to initialize checkpoint storage: {str(e)}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def load(self, file_hash: str) -> Optional[Checkpoint]:
        try:
            async with get_session(self.session_factory) as session:
                row = await session.get(ApplyCheckpoint, file_hash)
                if row is None:
                    return None
                return Checkpoint.model_validate(row.data)
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to load checkpoint {file_hash}: {str(e)}") from e

    async def save(self, file_hash: str, checkpoint: Checkpoint) -> None:
        try:
            async with get_session(self.session_factory) as session:
                await session.merge(ApplyCheckpoint(
                    file_hash=file_hash,
                    file_name=checkpoint.file_name,
                    data=checkpoint.model_dump(mode="json"),
                    updated_at=checkpoint.timestamp or time.time(),
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to save checkpoint {file_hash}: {str(e)}") from e

    async def clear(self, file_hash: str) -> None:
        try:
            async with get_session(self.session_factory) as session:
                await session.execute(delete(ApplyCheckpoint).where(ApplyCheckpoint.file_hash == file_hash))
                await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to clear checkpoint {file_hash}: {str(e)}") from e

    async def cleanup_old(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        cutoff = time.time() - max_age.total_seconds()
        try:
            async with get_session(self.session_factory) as session:
                result = await session.execute(
                    select(ApplyCheckpoint.file_hash).where(ApplyCheckpoint.updated_at < cutoff)
                )
                stale = list(result.scalars().all())
                if stale:
                    await session.execute(delete(ApplyCheckpoint).where(ApplyCheckpoint.file_hash.in_(stale)))
                    await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to clean up checkpoints: {str(e)}") from e

        if stale:
            logger.info(f"Removed {len(stale)} checkpoint(s) older than {max_age.days} days")
        return len(stale)
