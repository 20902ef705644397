"""PostgreSQL-backed messages, escalations and owner reputation counters."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Sequence

import asyncpg

from platesafe.safety.domain.errors import ConflictError, NotFoundError
from platesafe.safety.domain.escalation import (
    AuthorityType,
    Escalation,
    EscalationLevel,
    EscalationOutcome,
    EscalationPlan,
    EscalationPlanner,
    EscalationRepository,
    Message,
    OwnerReputation,
    ReputationCounter,
    Urgency,
)
from platesafe.safety.domain.identity import normalize_plate

_MESSAGE_COLUMNS = (
    "message_id, plate, sender_id, body, urgency, created_at, escalation_deadline, escalated, "
    "escalated_at, escalation_level, escalation_reason, has_response, resolved, resolved_at"
)
_ESCALATION_COLUMNS = (
    "escalation_id, message_id, plate, escalated_by, escalated_at, level, reason, urgency, authority_type, "
    "authority_contacted, authority_contacted_at, authority_reference, resolved, resolved_at, outcome, outcome_notes"
)
_COUNTER_COLUMNS = {
    ReputationCounter.ESCALATIONS_RECEIVED: "escalations_received",
    ReputationCounter.ESCALATIONS_RESOLVED: "escalations_resolved",
}


def _row_to_message(row: asyncpg.Record) -> Message:
    return Message(
        message_id=str(row["message_id"]),
        plate=str(row["plate"]),
        sender_id=str(row["sender_id"]),
        text=str(row["body"]),
        urgency=Urgency(str(row["urgency"])),
        created_at=row["created_at"],
        escalation_deadline=row["escalation_deadline"],
        escalated=bool(row["escalated"]),
        escalated_at=row["escalated_at"],
        escalation_level=EscalationLevel(str(row["escalation_level"])),
        escalation_reason=row["escalation_reason"],
        has_response=bool(row["has_response"]),
        resolved=bool(row["resolved"]),
        resolved_at=row["resolved_at"],
    )


def _row_to_escalation(row: asyncpg.Record) -> Escalation:
    authority = row["authority_type"]
    outcome = row["outcome"]
    return Escalation(
        escalation_id=str(row["escalation_id"]),
        message_id=str(row["message_id"]),
        plate=str(row["plate"]),
        escalated_by=str(row["escalated_by"]),
        level=EscalationLevel(str(row["level"])),
        urgency=Urgency(str(row["urgency"])),
        escalated_at=row["escalated_at"],
        reason=row["reason"],
        authority_type=AuthorityType(authority) if authority else None,
        authority_contacted=bool(row["authority_contacted"]),
        authority_contacted_at=row["authority_contacted_at"],
        authority_reference=row["authority_reference"],
        resolved=bool(row["resolved"]),
        resolved_at=row["resolved_at"],
        outcome=EscalationOutcome(outcome) if outcome else None,
        outcome_notes=row["outcome_notes"],
    )


class PostgresEscalationRepository(EscalationRepository):
    """Every state change runs in one transaction holding the message row lock."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def add_message(self, message: Message) -> Message:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO plate_message (
                message_id, plate, sender_id, body, urgency, created_at, escalation_deadline
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (message_id) DO NOTHING
            RETURNING {_MESSAGE_COLUMNS}
            """,
            message.message_id,
            message.plate,
            message.sender_id,
            message.text,
            message.urgency.value,
            message.created_at,
            message.escalation_deadline,
        )
        if row is None:
            raise ConflictError("message_exists")
        return _row_to_message(row)

    async def get_message(self, message_id: str) -> Message | None:
        row = await self._pool.fetchrow(
            f"SELECT {_MESSAGE_COLUMNS} FROM plate_message WHERE message_id = $1",
            message_id,
        )
        return _row_to_message(row) if row is not None else None

    async def apply(self, message_id: str, planner: EscalationPlanner) -> EscalationPlan | None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_MESSAGE_COLUMNS} FROM plate_message WHERE message_id = $1 FOR UPDATE",
                    message_id,
                )
                if row is None:
                    raise NotFoundError("message_not_found")
                message = _row_to_message(row)
                owner_id = await conn.fetchval("SELECT owner_id FROM plate WHERE plate = $1", message.plate)
                escalation_rows = await conn.fetch(
                    f"SELECT {_ESCALATION_COLUMNS} FROM escalation WHERE message_id = $1 ORDER BY escalated_at",
                    message_id,
                )
                plan = planner(message, [_row_to_escalation(item) for item in escalation_rows])
                if plan is None:
                    return None
                await self._write_message(conn, plan.message)
                for escalation in plan.escalations:
                    await self._upsert_escalation(conn, escalation)
                if plan.counter is not None and owner_id is not None:
                    column = _COUNTER_COLUMNS[plan.counter]
                    await conn.execute(
                        f"""
                        INSERT INTO owner_reputation (owner_id, {column})
                        VALUES ($1, 1)
                        ON CONFLICT (owner_id) DO UPDATE SET {column} = owner_reputation.{column} + 1
                        """,
                        owner_id,
                    )
        return replace(plan, owner_id=str(owner_id) if owner_id is not None else None)

    async def list_overdue(self, now: datetime, limit: int) -> Sequence[Message]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM plate_message
            WHERE escalation_deadline <= $1
              AND escalated = FALSE
              AND resolved = FALSE
              AND has_response = FALSE
            ORDER BY escalation_deadline ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [_row_to_message(row) for row in rows]

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        row = await self._pool.fetchrow(
            f"SELECT {_ESCALATION_COLUMNS} FROM escalation WHERE escalation_id = $1",
            escalation_id,
        )
        return _row_to_escalation(row) if row is not None else None

    async def list_escalations(self, message_id: str) -> Sequence[Escalation]:
        rows = await self._pool.fetch(
            f"SELECT {_ESCALATION_COLUMNS} FROM escalation WHERE message_id = $1 ORDER BY escalated_at",
            message_id,
        )
        return [_row_to_escalation(row) for row in rows]

    async def list_pending(self, limit: int) -> Sequence[Escalation]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_ESCALATION_COLUMNS}
            FROM escalation
            WHERE resolved = FALSE AND authority_contacted = TRUE
            ORDER BY escalated_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [_row_to_escalation(row) for row in rows]

    async def plate_owner(self, plate: str) -> str | None:
        owner = await self._pool.fetchval("SELECT owner_id FROM plate WHERE plate = $1", normalize_plate(plate))
        return str(owner) if owner is not None else None

    async def owner_reputation(self, owner_id: str) -> OwnerReputation:
        row = await self._pool.fetchrow(
            "SELECT escalations_received, escalations_resolved FROM owner_reputation WHERE owner_id = $1",
            owner_id,
        )
        if row is None:
            return OwnerReputation(owner_id=owner_id)
        return OwnerReputation(
            owner_id=owner_id,
            escalations_received=int(row["escalations_received"]),
            escalations_resolved=int(row["escalations_resolved"]),
        )

    async def _write_message(self, conn: asyncpg.Connection, message: Message) -> None:
        await conn.execute(
            """
            UPDATE plate_message
            SET escalated = $2,
                escalated_at = $3,
                escalation_level = $4,
                escalation_reason = $5,
                has_response = $6,
                resolved = $7,
                resolved_at = $8
            WHERE message_id = $1
            """,
            message.message_id,
            message.escalated,
            message.escalated_at,
            message.escalation_level.value,
            message.escalation_reason,
            message.has_response,
            message.resolved,
            message.resolved_at,
        )

    async def _upsert_escalation(self, conn: asyncpg.Connection, escalation: Escalation) -> None:
        await conn.execute(
            """
            INSERT INTO escalation (
                escalation_id, message_id, plate, escalated_by, escalated_at, level, reason, urgency,
                authority_type, authority_contacted, authority_contacted_at, authority_reference,
                resolved, resolved_at, outcome, outcome_notes
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (escalation_id) DO UPDATE
            SET authority_reference = EXCLUDED.authority_reference,
                resolved = EXCLUDED.resolved,
                resolved_at = EXCLUDED.resolved_at,
                outcome = EXCLUDED.outcome,
                outcome_notes = EXCLUDED.outcome_notes
            """,
            escalation.escalation_id,
            escalation.message_id,
            escalation.plate,
            escalation.escalated_by,
            escalation.escalated_at,
            escalation.level.value,
            escalation.reason,
            escalation.urgency.value,
            escalation.authority_type.value if escalation.authority_type else None,
            escalation.authority_contacted,
            escalation.authority_contacted_at,
            escalation.authority_reference,
            escalation.resolved,
            escalation.resolved_at,
            escalation.outcome.value if escalation.outcome else None,
            escalation.outcome_notes,
        )
