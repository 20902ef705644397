"""PostgreSQL-backed block appeals."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

import asyncpg

from platesafe.safety.domain.appeals import Appeal, AppealRepository, AppealStatus

_COLUMNS = (
    "appeal_id, user_id, reason, status, created_at, reviewed_by, reviewed_at, review_notes, trust_adjustment"
)


def _row_to_appeal(row: asyncpg.Record) -> Appeal:
    return Appeal(
        appeal_id=str(row["appeal_id"]),
        user_id=str(row["user_id"]),
        reason=str(row["reason"]),
        created_at=row["created_at"],
        status=AppealStatus(str(row["status"])),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        review_notes=row["review_notes"],
        trust_adjustment=int(row["trust_adjustment"]),
    )


class PostgresAppealRepository(AppealRepository):
    """Submissions for one user are serialised with a transaction-scoped advisory lock."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def add_unless_pending(self, appeal: Appeal, *, since: datetime) -> bool:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext('appeal:' || $1))", appeal.user_id)
                pending = await conn.fetchval(
                    """
                    SELECT 1 FROM appeal
                    WHERE user_id = $1 AND status = 'pending' AND created_at >= $2
                    LIMIT 1
                    """,
                    appeal.user_id,
                    since,
                )
                if pending is not None:
                    return False
                await conn.execute(
                    """
                    INSERT INTO appeal (appeal_id, user_id, reason, status, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    appeal.appeal_id,
                    appeal.user_id,
                    appeal.reason,
                    appeal.status.value,
                    appeal.created_at,
                )
        return True

    async def get(self, appeal_id: str) -> Appeal | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM appeal WHERE appeal_id = $1", appeal_id)
        return _row_to_appeal(row) if row is not None else None

    async def list_by_status(self, status: AppealStatus | None = None, limit: int = 100) -> Sequence[Appeal]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM appeal
            WHERE $1::text IS NULL OR status = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            status.value if status is not None else None,
            limit,
        )
        return [_row_to_appeal(row) for row in rows]

    async def list_for_user(self, user_id: str, limit: int = 10) -> Sequence[Appeal]:
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM appeal WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
            user_id,
            limit,
        )
        return [_row_to_appeal(row) for row in rows]

    async def close(self, appeal: Appeal) -> Appeal | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE appeal
            SET status = $2, reviewed_by = $3, reviewed_at = $4, review_notes = $5, trust_adjustment = $6
            WHERE appeal_id = $1 AND status = 'pending'
            RETURNING {_COLUMNS}
            """,
            appeal.appeal_id,
            appeal.status.value,
            appeal.reviewed_by,
            appeal.reviewed_at,
            appeal.review_notes,
            appeal.trust_adjustment,
        )
        return _row_to_appeal(row) if row is not None else None
