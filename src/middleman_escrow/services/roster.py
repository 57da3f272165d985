"""Middleman directory collaborator.

The dispatcher only needs ``{available, workload, responseTime, rating}``
per middleman. ``DatabaseRoster`` derives workload from live rows (pending
offers plus active supervision sessions); ``StaticRoster`` serves a fixed
pool, which is what tests and the simulation use.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

from middleman_escrow.domain.dispatch import MiddlemanCandidate
from middleman_escrow.infrastructure.database.repositories import (
    AssignmentRepository,
    MiddlemanRepository,
    SupervisionRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class MiddlemanRoster(Protocol):
    async def candidates(self, session: AsyncSession) -> list[MiddlemanCandidate]:
        ...


class StaticRoster:
    """A fixed list of candidates. Workload is whatever the caller set."""

    def __init__(self, candidates: Iterable[MiddlemanCandidate]) -> None:
        self._candidates = list(candidates)

    async def candidates(self, session: AsyncSession) -> list[MiddlemanCandidate]:
        return list(self._candidates)


class DatabaseRoster:
    """Roster backed by the ``middlemen`` table."""

    async def candidates(self, session: AsyncSession) -> list[MiddlemanCandidate]:
        middlemen = await MiddlemanRepository(session).list_all()
        pending = await AssignmentRepository(session).pending_counts()
        supervising = await SupervisionRepository(session).live_counts()
        return [
            MiddlemanCandidate(
                middleman_id=m.id,
                available=m.available,
                current_workload=pending.get(m.id, 0) + supervising.get(m.id, 0),
                average_response_time_minutes=m.average_response_time_minutes,
                rating=m.rating,
            )
            for m in middlemen
        ]
