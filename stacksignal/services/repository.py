from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from stacksignal.services.records import (
    CompanyNoteRecord,
    CompanyRecord,
    JobPostingRecord,
    QueueJobRecord,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


QUEUE_JOB_UPDATABLE_COLUMNS = {
    "status",
    "attempts",
    "last_error",
    "result",
    "started_at",
    "completed_at",
}

_COMPANY_COLUMNS = """
  id::text as id,
  raw_name,
  normalized_name,
  tool_detected,
  signal_type,
  confidence,
  context,
  source_job_id,
  identified_at,
  leads_generated,
  leads_generated_at,
  leads_generated_by,
  merged_into::text as merged_into
"""

_QUEUE_JOB_COLUMNS = """
  id::text as id,
  type,
  payload,
  status,
  priority,
  attempts,
  max_attempts,
  last_error,
  result,
  created_at,
  started_at,
  completed_at
"""

_CONNECTION_ERRORS = (OSError, pg_exc.PostgresConnectionError, pg_exc.InterfaceError)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def insert_posting(self, posting: JobPostingRecord) -> JobPostingRecord:
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    """
                    insert into job_postings (id, company, title, description, url, scraped_at, processed, analyzed_at)
                    values ($1, $2, $3, $4, $5, $6, $7, $8)
                    returning id, company, title, description, url, scraped_at, processed, analyzed_at
                    """,
                    posting.id,
                    posting.company,
                    posting.title,
                    posting.description,
                    posting.url,
                    posting.scraped_at,
                    posting.processed,
                    posting.analyzed_at,
                )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"posting {posting.id} already exists") from exc
        return self._posting_row_to_record(row)

    async def get_posting(self, job_id: str) -> JobPostingRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select id, company, title, description, url, scraped_at, processed, analyzed_at
                from job_postings
                where id = $1
                """,
                job_id,
            )
        return self._posting_row_to_record(row) if row else None

    async def fetch_unprocessed_postings(self, limit: int) -> list[JobPostingRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select id, company, title, description, url, scraped_at, processed, analyzed_at
                from job_postings
                where processed = false
                order by scraped_at asc, id asc
                limit $1
                """,
                max(0, limit),
            )
        return [self._posting_row_to_record(row) for row in rows]

    async def mark_processed(self, job_id: str, analyzed_at: datetime | None = None) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(
                """
                update job_postings
                set processed = true, analyzed_at = $2
                where id = $1
                returning id
                """,
                job_id,
                analyzed_at or datetime.now(timezone.utc),
            )
        if not updated:
            raise RepositoryNotFoundError("posting not found")

    async def count_unprocessed(self) -> int:
        async with self._connection() as conn:
            count = await conn.fetchval("select count(*) from job_postings where processed = false")
        return int(count or 0)

    async def get_company(self, company_id: str) -> CompanyRecord | None:
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    f"select {_COMPANY_COLUMNS} from identified_companies where id = $1::uuid",
                    company_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._company_row_to_record(row) if row else None

    async def find_companies_by_normalized_name(
        self,
        normalized_name: str,
        *,
        include_merged: bool = False,
    ) -> list[CompanyRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_COMPANY_COLUMNS}
                from identified_companies
                where normalized_name = $1
                  and ($2::boolean or merged_into is null)
                order by identified_at asc, id asc
                """,
                normalized_name,
                include_merged,
            )
        return [self._company_row_to_record(row) for row in rows]

    async def list_active_companies(self) -> list[CompanyRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_COMPANY_COLUMNS}
                from identified_companies
                where merged_into is null
                order by identified_at asc, id asc
                """
            )
        return [self._company_row_to_record(row) for row in rows]

    async def upsert_company(
        self,
        *,
        company_id: str | None,
        raw_name: str,
        normalized_name: str,
        tool_detected: str,
        signal_type: str,
        confidence: str,
        context: str,
        source_job_id: str | None,
    ) -> CompanyRecord:
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    if company_id is None:
                        row = await conn.fetchrow(
                            f"""
                            insert into identified_companies (
                              raw_name,
                              normalized_name,
                              tool_detected,
                              signal_type,
                              confidence,
                              context,
                              source_job_id
                            )
                            values ($1, $2, $3, $4, $5, $6, $7)
                            returning {_COMPANY_COLUMNS}
                            """,
                            raw_name,
                            normalized_name,
                            tool_detected,
                            signal_type,
                            confidence,
                            context,
                            source_job_id,
                        )
                    else:
                        row = await conn.fetchrow(
                            f"""
                            update identified_companies
                            set
                              tool_detected = $2,
                              signal_type = $3,
                              confidence = $4,
                              context = $5
                            where id = $1::uuid and merged_into is null
                            returning {_COMPANY_COLUMNS}
                            """,
                            company_id,
                            tool_detected,
                            signal_type,
                            confidence,
                            context,
                        )
                        if not row:
                            exists = await conn.fetchval("select 1 from identified_companies where id = $1::uuid", company_id)
                            if not exists:
                                raise RepositoryNotFoundError("company not found")
                            raise RepositoryConflictError("company has been merged")

                    if source_job_id:
                        await self._link_source(conn=conn, company_id=row["id"], job_id=source_job_id)
                    return self._company_row_to_record(row)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"active company already exists for {normalized_name!r}") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc

    async def link_company_source(self, company_id: str, job_id: str) -> None:
        try:
            async with self._connection() as conn:
                await self._link_source(conn=conn, company_id=company_id, job_id=job_id)
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc

    async def list_company_sources(self, company_id: str) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select job_id
                from company_job_sources
                where company_id = $1::uuid
                order by linked_at asc, job_id asc
                """,
                company_id,
            )
        return [row["job_id"] for row in rows]

    async def add_company_note(self, company_id: str, body: str, author: str | None = None) -> CompanyNoteRecord:
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    """
                    insert into company_notes (company_id, body, author)
                    values ($1::uuid, $2, $3)
                    returning id::text as id, company_id::text as company_id, body, author, created_at
                    """,
                    company_id,
                    body,
                    author,
                )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc
        return CompanyNoteRecord(
            id=row["id"],
            company_id=row["company_id"],
            body=row["body"],
            author=row["author"],
            created_at=row["created_at"],
        )

    async def list_company_notes(self, company_id: str) -> list[CompanyNoteRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select id::text as id, company_id::text as company_id, body, author, created_at
                from company_notes
                where company_id = $1::uuid
                order by created_at asc, id asc
                """,
                company_id,
            )
        return [
            CompanyNoteRecord(
                id=row["id"],
                company_id=row["company_id"],
                body=row["body"],
                author=row["author"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def update_lead_status(
        self,
        company_id: str,
        *,
        leads_generated: bool,
        generated_by: str | None,
    ) -> CompanyRecord:
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select merged_into from identified_companies where id = $1::uuid for update",
                        company_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("company not found")
                    if current["merged_into"] is not None:
                        raise RepositoryConflictError("company has been merged")
                    row = await conn.fetchrow(
                        f"""
                        update identified_companies
                        set
                          leads_generated = $2,
                          leads_generated_at = case when $2 then now() else null end,
                          leads_generated_by = case when $2 then $3 else null end
                        where id = $1::uuid
                        returning {_COMPANY_COLUMNS}
                        """,
                        company_id,
                        leads_generated,
                        generated_by,
                    )
                    return self._company_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc

    async def reassign_dependents(self, from_company_id: str, to_company_id: str) -> int:
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    return await self._reassign_dependents(
                        conn=conn,
                        from_company_id=from_company_id,
                        to_company_id=to_company_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc

    async def merge_company(self, primary_id: str, duplicate_id: str) -> CompanyRecord:
        if primary_id == duplicate_id:
            raise RepositoryConflictError("primary and duplicate company ids must differ")

        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    locked_rows = await conn.fetch(
                        """
                        select id::text as id, merged_into::text as merged_into
                        from identified_companies
                        where id = any(array[$1::uuid, $2::uuid])
                        order by id
                        for update
                        """,
                        primary_id,
                        duplicate_id,
                    )
                    by_id = {row["id"]: row for row in locked_rows}
                    if primary_id not in by_id or duplicate_id not in by_id:
                        raise RepositoryNotFoundError("company not found")
                    if by_id[primary_id]["merged_into"] is not None:
                        raise RepositoryConflictError("primary company has been merged")
                    if by_id[duplicate_id]["merged_into"] is not None:
                        raise RepositoryConflictError("duplicate company already merged")

                    await self._reassign_dependents(
                        conn=conn,
                        from_company_id=duplicate_id,
                        to_company_id=primary_id,
                    )
                    await conn.execute(
                        """
                        update identified_companies
                        set merged_into = $1::uuid
                        where id = $2::uuid
                        """,
                        primary_id,
                        duplicate_id,
                    )
                    row = await conn.fetchrow(
                        f"select {_COMPANY_COLUMNS} from identified_companies where id = $1::uuid",
                        primary_id,
                    )
                    return self._company_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("company not found") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"merge failed: {exc}") from exc

    async def count_companies(self) -> dict[str, int]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                select
                  count(*) filter (where merged_into is null) as active,
                  count(*) filter (where merged_into is not null) as merged
                from identified_companies
                """
            )
        return {"active": int(row["active"] or 0), "merged": int(row["merged"] or 0)}

    async def insert_queue_job(self, job: QueueJobRecord) -> QueueJobRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                insert into queue_jobs (id, type, payload, status, priority, attempts, max_attempts, created_at)
                values ($1::uuid, $2, $3::jsonb, $4, $5, $6, $7, $8)
                returning {_QUEUE_JOB_COLUMNS}
                """,
                job.id,
                job.type,
                json.dumps(job.payload),
                job.status,
                job.priority,
                job.attempts,
                job.max_attempts,
                job.created_at,
            )
        return self._queue_job_row_to_record(row)

    async def get_queue_job(self, job_id: str) -> QueueJobRecord | None:
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    f"select {_QUEUE_JOB_COLUMNS} from queue_jobs where id = $1::uuid",
                    job_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._queue_job_row_to_record(row) if row else None

    async def list_queue_jobs(self, status: str | None = None, limit: int = 100) -> list[QueueJobRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_QUEUE_JOB_COLUMNS}
                from queue_jobs
                where ($1::text is null or status = $1)
                order by priority desc, created_at asc, id asc
                limit $2
                """,
                status,
                max(0, limit),
            )
        return [self._queue_job_row_to_record(row) for row in rows]

    async def claim_next_queue_job(self) -> QueueJobRecord | None:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from queue_jobs
                      where status = 'pending'
                      order by priority desc, created_at asc, id asc
                      limit 1
                      for update skip locked
                    )
                    update queue_jobs
                    set status = 'processing', started_at = now()
                    where id = (select id from next_job)
                    returning {_QUEUE_JOB_COLUMNS}
                    """
                )
        return self._queue_job_row_to_record(row) if row else None

    async def update_queue_job(
        self,
        job_id: str,
        *,
        expected_status: str,
        changes: dict[str, Any],
    ) -> QueueJobRecord | None:
        unknown = set(changes) - QUEUE_JOB_UPDATABLE_COLUMNS
        if unknown:
            raise RepositoryConflictError(f"unsupported queue job columns: {sorted(unknown)}")

        params: list[Any] = [job_id, expected_status]

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        assignments: list[str] = []
        for column, value in changes.items():
            if column == "result":
                assignments.append(f"result = {bind(json.dumps(value) if value is not None else None)}::jsonb")
            else:
                assignments.append(f"{column} = {bind(value)}")
        if not assignments:
            return await self.get_queue_job(job_id)

        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    update queue_jobs
                    set {", ".join(assignments)}
                    where id = $1::uuid and status = $2
                    returning {_QUEUE_JOB_COLUMNS}
                    """,
                    *params,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._queue_job_row_to_record(row) if row else None

    async def delete_dead_queue_jobs(self) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                delete from queue_jobs
                where status = 'failed' and attempts >= max_attempts
                returning id
                """
            )
        return len(rows)

    async def count_queue_jobs(self) -> dict[str, int]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                select
                  status,
                  count(*) as total,
                  count(*) filter (where status = 'failed' and attempts >= max_attempts) as dead
                from queue_jobs
                group by status
                """
            )
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "dead": 0}
        for row in rows:
            counts[row["status"]] = int(row["total"])
            counts["dead"] += int(row["dead"])
        return counts

    async def _link_source(self, *, conn: asyncpg.Connection, company_id: str, job_id: str) -> None:
        await conn.execute(
            """
            insert into company_job_sources (company_id, job_id)
            values ($1::uuid, $2)
            on conflict do nothing
            """,
            company_id,
            job_id,
        )

    async def _reassign_dependents(
        self,
        *,
        conn: asyncpg.Connection,
        from_company_id: str,
        to_company_id: str,
    ) -> int:
        exists = await conn.fetchval(
            "select count(*) from identified_companies where id = any(array[$1::uuid, $2::uuid])",
            from_company_id,
            to_company_id,
        )
        if int(exists or 0) != 2:
            raise RepositoryNotFoundError("company not found")

        moved_sources = await conn.fetch(
            """
            insert into company_job_sources (company_id, job_id, linked_at)
            select $1::uuid, job_id, linked_at
            from company_job_sources
            where company_id = $2::uuid
            on conflict do nothing
            returning job_id
            """,
            to_company_id,
            from_company_id,
        )
        await conn.execute("delete from company_job_sources where company_id = $1::uuid", from_company_id)
        moved_notes = await conn.fetch(
            """
            update company_notes
            set company_id = $1::uuid
            where company_id = $2::uuid
            returning id
            """,
            to_company_id,
            from_company_id,
        )
        moved_leads = await conn.fetch(
            """
            update identified_companies kept
            set
              leads_generated = true,
              leads_generated_at = absorbed.leads_generated_at,
              leads_generated_by = absorbed.leads_generated_by
            from identified_companies absorbed
            where kept.id = $1::uuid
              and absorbed.id = $2::uuid
              and absorbed.leads_generated = true
              and kept.leads_generated = false
            returning kept.id
            """,
            to_company_id,
            from_company_id,
        )
        return len(moved_sources) + len(moved_notes) + len(moved_leads)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _posting_row_to_record(row: asyncpg.Record) -> JobPostingRecord:
        return JobPostingRecord(
            id=row["id"],
            company=row["company"],
            title=row["title"],
            description=row["description"],
            url=row["url"],
            scraped_at=row["scraped_at"],
            processed=bool(row["processed"]),
            analyzed_at=row["analyzed_at"],
        )

    @staticmethod
    def _company_row_to_record(row: asyncpg.Record) -> CompanyRecord:
        return CompanyRecord(
            id=row["id"],
            raw_name=row["raw_name"],
            normalized_name=row["normalized_name"],
            tool_detected=row["tool_detected"],
            signal_type=row["signal_type"],
            confidence=row["confidence"],
            context=row["context"] or "",
            source_job_id=row["source_job_id"],
            identified_at=row["identified_at"],
            leads_generated=bool(row["leads_generated"]),
            leads_generated_at=row["leads_generated_at"],
            leads_generated_by=row["leads_generated_by"],
            merged_into=row["merged_into"],
        )

    @staticmethod
    def _queue_job_row_to_record(row: asyncpg.Record) -> QueueJobRecord:
        return QueueJobRecord(
            id=row["id"],
            type=row["type"],
            payload=_coerce_json_dict(row["payload"]),
            status=row["status"],
            priority=int(row["priority"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            last_error=row["last_error"],
            result=_coerce_json_dict(row["result"]) if row["result"] is not None else None,
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}
