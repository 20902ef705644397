"""PostgreSQL-backed abuse reports."""

from __future__ import annotations

from typing import Sequence

import asyncpg

from platesafe.safety.domain.reports import Report, ReportRepository, ReportStatus

_COLUMNS = (
    "report_id, reported_user_id, reporter_id, message_id, reason, status, created_at, "
    "reviewed_by, reviewed_at, review_notes"
)


def _row_to_report(row: asyncpg.Record) -> Report:
    return Report(
        report_id=str(row["report_id"]),
        reported_user_id=str(row["reported_user_id"]),
        reporter_id=str(row["reporter_id"]),
        message_id=str(row["message_id"]),
        reason=str(row["reason"]),
        created_at=row["created_at"],
        status=ReportStatus(str(row["status"])),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        review_notes=row["review_notes"],
    )


class PostgresReportRepository(ReportRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert_if_absent(self, report: Report) -> bool:
        inserted = await self._pool.fetchval(
            """
            INSERT INTO abuse_report (report_id, reported_user_id, reporter_id, message_id, reason, status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (message_id, reporter_id) DO NOTHING
            RETURNING report_id
            """,
            report.report_id,
            report.reported_user_id,
            report.reporter_id,
            report.message_id,
            report.reason,
            report.status.value,
            report.created_at,
        )
        return inserted is not None

    async def discard(self, report_id: str) -> None:
        await self._pool.execute("DELETE FROM abuse_report WHERE report_id = $1", report_id)

    async def list_for_user(self, reported_user_id: str, limit: int = 50) -> Sequence[Report]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM abuse_report
            WHERE reported_user_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            reported_user_id,
            limit,
        )
        return [_row_to_report(row) for row in rows]

    async def get(self, report_id: str) -> Report | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM abuse_report WHERE report_id = $1", report_id)
        return _row_to_report(row) if row is not None else None

    async def list_by_status(self, status: ReportStatus | None = None, limit: int = 100) -> Sequence[Report]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM abuse_report
            WHERE $1::text IS NULL OR status = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            status.value if status is not None else None,
            limit,
        )
        return [_row_to_report(row) for row in rows]

    async def save_review(self, report: Report) -> Report | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE abuse_report
            SET status = $2, reviewed_by = $3, reviewed_at = $4, review_notes = $5
            WHERE report_id = $1
            RETURNING {_COLUMNS}
            """,
            report.report_id,
            report.status.value,
            report.reviewed_by,
            report.reviewed_at,
            report.review_notes,
        )
        return _row_to_report(row) if row is not None else None
