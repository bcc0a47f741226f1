"""Review queue storage: finished work waiting for gates or a merge."""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import (
    BeadEventType,
    BeadStatus,
    ReviewQueueEntry,
    ReviewStatus,
    utcnow_naive,
)
from gastown.errors import ConflictError, NotFoundError
from gastown.schemas import SubmitReviewInput
from gastown.town.beads import BeadStore

log = structlog.get_logger()

OUTSTANDING_STATUSES = [ReviewStatus.PENDING.value, ReviewStatus.RUNNING.value]


class ReviewQueue:
    """FIFO of review entries. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.beads = BeadStore(session)

    async def submit(self, data: SubmitReviewInput) -> ReviewQueueEntry:
        await self.beads.require(data.bead_id)
        entry = ReviewQueueEntry(
            agent_id=data.agent_id,
            bead_id=data.bead_id,
            branch=data.branch,
            summary=data.summary,
            pr_url=data.pr_url,
        )
        self.session.add(entry)
        await self.beads.log_event(
            data.bead_id,
            BeadEventType.REVIEW_SUBMITTED,
            agent_id=data.agent_id,
            new_value=data.branch,
            metadata={"entry_id": entry.id},
        )
        log.info("review_submitted", entry_id=entry.id, bead_id=data.bead_id, branch=data.branch)
        return entry

    async def get(self, entry_id: str) -> ReviewQueueEntry | None:
        return await self.session.get(ReviewQueueEntry, entry_id)

    async def list(self, status: ReviewStatus | None = None) -> list[ReviewQueueEntry]:
        query = select(ReviewQueueEntry)
        if status is not None:
            query = query.where(ReviewQueueEntry.status == status.value)
        result = await self.session.execute(query.order_by(col(ReviewQueueEntry.created_at)))
        return list(result.scalars().all())

    async def pop(self) -> ReviewQueueEntry | None:
        """Claim the oldest pending entry, marking it running."""
        result = await self.session.execute(
            select(ReviewQueueEntry)
            .where(ReviewQueueEntry.status == ReviewStatus.PENDING.value)
            .order_by(col(ReviewQueueEntry.created_at))
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return None
        entry.status = ReviewStatus.RUNNING.value
        entry.processed_at = utcnow_naive()
        self.session.add(entry)
        return entry

    async def running_before(self, cutoff: datetime) -> list[ReviewQueueEntry]:
        result = await self.session.execute(
            select(ReviewQueueEntry)
            .where(ReviewQueueEntry.status == ReviewStatus.RUNNING.value)
            .where(col(ReviewQueueEntry.processed_at) < cutoff)
        )
        return list(result.scalars().all())

    async def requeue(self, entry: ReviewQueueEntry) -> None:
        entry.status = ReviewStatus.PENDING.value
        entry.processed_at = None
        self.session.add(entry)
        log.info("review_requeued", entry_id=entry.id, bead_id=entry.bead_id)

    async def complete(
        self,
        entry_id: str,
        status: ReviewStatus,
        *,
        commit_sha: str | None = None,
        message: str | None = None,
    ) -> ReviewQueueEntry:
        """Finish an entry as merged or failed. Merged entries close their bead."""
        entry = await self.get(entry_id)
        if entry is None:
            raise NotFoundError("ReviewQueueEntry", entry_id)
        if entry.status in {ReviewStatus.MERGED.value, ReviewStatus.FAILED.value}:
            raise ConflictError(
                f"Review entry {entry_id} is already {entry.status}",
                details={"entry_id": entry_id, "status": entry.status},
            )

        entry.status = status.value
        entry.commit_sha = commit_sha
        entry.message = message
        entry.processed_at = utcnow_naive()
        self.session.add(entry)

        bead = await self.beads.get(entry.bead_id)
        if status == ReviewStatus.MERGED and bead is not None and bead.status != BeadStatus.FAILED:
            await self.beads.update_status(
                entry.bead_id, BeadStatus.CLOSED, agent_id=entry.agent_id
            )
        await self.beads.log_event(
            entry.bead_id,
            BeadEventType.REVIEW_COMPLETED,
            agent_id=entry.agent_id,
            new_value=status.value,
            metadata={"entry_id": entry_id, "commit_sha": commit_sha, "message": message},
        )
        log.info(
            "review_completed",
            entry_id=entry_id,
            bead_id=entry.bead_id,
            status=status.value,
            commit_sha=commit_sha,
        )
        return entry

    async def has_outstanding(self) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(ReviewQueueEntry)
            .where(col(ReviewQueueEntry.status).in_(OUTSTANDING_STATUSES))
        )
        return (result.scalar_one() or 0) > 0

    async def counts(self) -> dict[str, int]:
        result = await self.session.execute(
            select(ReviewQueueEntry.status, func.count()).group_by(ReviewQueueEntry.status)
        )
        return {status: count for status, count in result.all()}
