"""PostgreSQL-backed trust state and history."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Collection, Sequence

import asyncpg

from platesafe.safety.domain.trust import (
    TrustMutation,
    TrustReason,
    TrustRepository,
    TrustScoreHistoryEntry,
    UserTrustState,
)

_STATE_COLUMNS = "user_id, trust_score, blocked, blocked_reason, blocked_at"
_HISTORY_COLUMNS = (
    "id, user_id, previous_score, new_score, change, reason, details, "
    "related_report_id, related_message_id, performed_by, created_at"
)


def _row_to_state(row: asyncpg.Record) -> UserTrustState:
    return UserTrustState(
        user_id=str(row["user_id"]),
        trust_score=int(row["trust_score"]),
        blocked=bool(row["blocked"]),
        blocked_reason=row["blocked_reason"],
        blocked_at=row["blocked_at"],
    )


def _row_to_entry(row: asyncpg.Record) -> TrustScoreHistoryEntry:
    return TrustScoreHistoryEntry(
        user_id=str(row["user_id"]),
        previous_score=int(row["previous_score"]),
        new_score=int(row["new_score"]),
        change=int(row["change"]),
        reason=TrustReason(str(row["reason"])),
        created_at=row["created_at"],
        details=row["details"],
        related_report_id=row["related_report_id"],
        related_message_id=row["related_message_id"],
        performed_by=str(row["performed_by"]),
        sequence=int(row["id"]),
    )


class PostgresTrustRepository(TrustRepository):
    """State rows are locked with ``SELECT ... FOR UPDATE`` for every mutation."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_state(self, user_id: str) -> UserTrustState | None:
        row = await self._pool.fetchrow(
            f"SELECT {_STATE_COLUMNS} FROM user_trust_state WHERE user_id = $1",
            user_id,
        )
        return _row_to_state(row) if row is not None else None

    async def mutate(
        self,
        user_id: str,
        *,
        default_score: int,
        mutation: TrustMutation,
    ) -> tuple[UserTrustState, TrustScoreHistoryEntry]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO user_trust_state (user_id, trust_score)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id) DO NOTHING
                    """,
                    user_id,
                    default_score,
                )
                row = await conn.fetchrow(
                    f"SELECT {_STATE_COLUMNS} FROM user_trust_state WHERE user_id = $1 FOR UPDATE",
                    user_id,
                )
                updated, entry = mutation(_row_to_state(row))
                await conn.execute(
                    """
                    UPDATE user_trust_state
                    SET trust_score = $2, blocked = $3, blocked_reason = $4, blocked_at = $5, updated_at = NOW()
                    WHERE user_id = $1
                    """,
                    user_id,
                    updated.trust_score,
                    updated.blocked,
                    updated.blocked_reason,
                    updated.blocked_at,
                )
                sequence = await conn.fetchval(
                    """
                    INSERT INTO trust_score_history (
                        user_id, previous_score, new_score, change, reason, details,
                        related_report_id, related_message_id, performed_by, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING id
                    """,
                    entry.user_id,
                    entry.previous_score,
                    entry.new_score,
                    entry.change,
                    entry.reason.value,
                    entry.details,
                    entry.related_report_id,
                    entry.related_message_id,
                    entry.performed_by,
                    entry.created_at,
                )
        return updated, replace(entry, sequence=int(sequence))

    async def list_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        since: datetime | None = None,
        reasons: Collection[TrustReason] | None = None,
    ) -> Sequence[TrustScoreHistoryEntry]:
        clauses = ["user_id = $1"]
        args: list[object] = [user_id]
        if since is not None:
            args.append(since)
            clauses.append(f"created_at >= ${len(args)}")
        if reasons is not None:
            args.append([reason.value for reason in reasons])
            clauses.append(f"reason = ANY(${len(args)}::text[])")
        query = (
            f"SELECT {_HISTORY_COLUMNS} FROM trust_score_history "
            f"WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id DESC"
        )
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        rows = await self._pool.fetch(query, *args)
        return [_row_to_entry(row) for row in rows]

    async def clear_block(self, user_id: str) -> UserTrustState | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE user_trust_state
            SET blocked = FALSE, blocked_reason = NULL, blocked_at = NULL, updated_at = NOW()
            WHERE user_id = $1
            RETURNING {_STATE_COLUMNS}
            """,
            user_id,
        )
        return _row_to_state(row) if row is not None else None
