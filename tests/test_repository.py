from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
import pytest

from stacksignal.services.dedupe import Deduplicator
from stacksignal.services.queue import QueueManager
from stacksignal.services.records import JobPostingRecord
from stacksignal.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryUnavailableError,
)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "sql" / "schema.sql"

T = TypeVar("T")


def test_repository_without_database_url_is_unavailable() -> None:
    repository = PostgresRepository(database_url=None, min_pool_size=1, max_pool_size=1)

    with pytest.raises(RepositoryUnavailableError, match="SS_DATABASE_URL"):
        _run(repository.count_unprocessed())
    with pytest.raises(RepositoryUnavailableError):
        _run(QueueManager(repository).get_queue_stats())


def test_repository_rejects_unknown_queue_columns() -> None:
    repository = PostgresRepository(database_url=None, min_pool_size=1, max_pool_size=1)

    with pytest.raises(RepositoryConflictError, match="unsupported queue job columns"):
        _run(repository.update_queue_job(str(uuid4()), expected_status="pending", changes={"priority": 1}))


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("SS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require SS_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture
def repository(database_url: str) -> PostgresRepository:
    _run(_reset_schema(database_url))
    return PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=2)


def test_postgres_processing_merge_and_queue_flow(repository: PostgresRepository) -> None:
    async def run() -> dict[str, Any]:
        try:
            await repository.insert_posting(
                JobPostingRecord(
                    id="job-1",
                    company="Acme Inc.",
                    title="SDR",
                    description="Outreach.io",
                    scraped_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                )
            )
            backlog = await repository.fetch_unprocessed_postings(10)
            await repository.mark_processed("job-1")

            primary = await repository.upsert_company(
                company_id=None,
                raw_name="Acme Inc.",
                normalized_name="acme",
                tool_detected="Outreach.io",
                signal_type="required",
                confidence="high",
                context="Outreach.io",
                source_job_id="job-1",
            )
            duplicate = await repository.upsert_company(
                company_id=None,
                raw_name="Acme Holdings",
                normalized_name="acme holdings",
                tool_detected="SalesLoft",
                signal_type="mention",
                confidence="low",
                context="",
                source_job_id=None,
            )
            await repository.add_company_note(duplicate.id, "warm intro", author="sam")
            merge = await Deduplicator(repository).merge_duplicates(primary.id, [duplicate.id, duplicate.id])

            queue = QueueManager(repository)
            job_id = await queue.add_job("process_batch", {"limit": 5})
            claimed = await queue.claim_next_job()
            completed = await queue.complete_job(job_id, {"ok": True})
            stale = await queue.fail_job(job_id, "late failure")

            return {
                "backlog": [row.id for row in backlog],
                "remaining": await repository.count_unprocessed(),
                "merge": merge,
                "notes": await repository.list_company_notes(primary.id),
                "counts": await repository.count_companies(),
                "claimed": claimed,
                "completed": completed,
                "stale": stale,
                "stats": await queue.get_queue_stats(),
                "job": await queue.get_job(job_id),
            }
        finally:
            await repository.close()

    result = _run(run())
    assert result["backlog"] == ["job-1"]
    assert result["remaining"] == 0
    assert result["merge"].success is True
    assert len(result["merge"].results) == 1
    assert [note.body for note in result["notes"]] == ["warm intro"]
    assert result["counts"] == {"active": 1, "merged": 1}
    assert result["claimed"] is not None and result["claimed"].status == "processing"
    assert result["completed"] is True
    assert result["stale"] is False
    assert result["stats"]["completed"] == 1
    assert result["job"].result == {"ok": True}


async def _reset_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            drop table if exists queue_jobs, company_notes, company_job_sources, identified_companies, job_postings cascade
            """
        )
        await conn.execute(SCHEMA_PATH.read_text())
    finally:
        await conn.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
