from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from stacksignal.services.records import (
    CompanyNoteRecord,
    CompanyRecord,
    JobPostingRecord,
    QueueJobRecord,
)
from stacksignal.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


class InMemoryStore:
    """Process-local store used for local runs and tests when no database is configured."""

    def __init__(self) -> None:
        self.postings: dict[str, JobPostingRecord] = {}
        self.companies: dict[str, CompanyRecord] = {}
        self.company_sources: dict[str, dict[str, datetime]] = {}
        self.company_notes: dict[str, CompanyNoteRecord] = {}
        self.queue_jobs: dict[str, QueueJobRecord] = {}
        self.write_count = 0

    async def close(self) -> None:
        return None

    async def insert_posting(self, posting: JobPostingRecord) -> JobPostingRecord:
        if posting.id in self.postings:
            raise RepositoryConflictError(f"posting {posting.id} already exists")
        self.postings[posting.id] = copy.copy(posting)
        self.write_count += 1
        return copy.copy(posting)

    async def get_posting(self, job_id: str) -> JobPostingRecord | None:
        posting = self.postings.get(job_id)
        return copy.copy(posting) if posting else None

    async def fetch_unprocessed_postings(self, limit: int) -> list[JobPostingRecord]:
        rows = [row for row in self.postings.values() if not row.processed]
        rows.sort(key=lambda row: (row.scraped_at, row.id))
        return [copy.copy(row) for row in rows[: max(0, limit)]]

    async def mark_processed(self, job_id: str, analyzed_at: datetime | None = None) -> None:
        posting = self.postings.get(job_id)
        if posting is None:
            raise RepositoryNotFoundError("posting not found")
        posting.processed = True
        posting.analyzed_at = analyzed_at or _now()
        self.write_count += 1

    async def count_unprocessed(self) -> int:
        return sum(1 for row in self.postings.values() if not row.processed)

    async def get_company(self, company_id: str) -> CompanyRecord | None:
        company = self.companies.get(company_id)
        return copy.copy(company) if company else None

    async def find_companies_by_normalized_name(
        self,
        normalized_name: str,
        *,
        include_merged: bool = False,
    ) -> list[CompanyRecord]:
        rows = [
            row
            for row in self.companies.values()
            if row.normalized_name == normalized_name and (include_merged or row.is_active)
        ]
        rows.sort(key=lambda row: (row.identified_at, row.id))
        return [copy.copy(row) for row in rows]

    async def list_active_companies(self) -> list[CompanyRecord]:
        rows = [row for row in self.companies.values() if row.is_active]
        rows.sort(key=lambda row: (row.identified_at, row.id))
        return [copy.copy(row) for row in rows]

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
        now = _now()
        if company_id is None:
            if any(row.is_active and row.normalized_name == normalized_name for row in self.companies.values()):
                raise RepositoryConflictError(f"active company already exists for {normalized_name!r}")
            company = CompanyRecord(
                id=str(uuid4()),
                raw_name=raw_name,
                normalized_name=normalized_name,
                tool_detected=tool_detected,
                signal_type=signal_type,
                confidence=confidence,
                context=context,
                source_job_id=source_job_id,
                identified_at=now,
            )
            self.companies[company.id] = company
        else:
            existing = self.companies.get(company_id)
            if existing is None:
                raise RepositoryNotFoundError("company not found")
            if not existing.is_active:
                raise RepositoryConflictError("company has been merged")
            existing.tool_detected = tool_detected
            existing.signal_type = signal_type
            existing.confidence = confidence
            existing.context = context
            company = existing

        self.write_count += 1
        if source_job_id:
            self.company_sources.setdefault(company.id, {}).setdefault(source_job_id, now)
        return copy.copy(company)

    async def link_company_source(self, company_id: str, job_id: str) -> None:
        if company_id not in self.companies:
            raise RepositoryNotFoundError("company not found")
        self.company_sources.setdefault(company_id, {}).setdefault(job_id, _now())
        self.write_count += 1

    async def list_company_sources(self, company_id: str) -> list[str]:
        links = self.company_sources.get(company_id, {})
        return [job_id for job_id, _ in sorted(links.items(), key=lambda item: (item[1], item[0]))]

    async def add_company_note(self, company_id: str, body: str, author: str | None = None) -> CompanyNoteRecord:
        if company_id not in self.companies:
            raise RepositoryNotFoundError("company not found")
        note = CompanyNoteRecord(
            id=str(uuid4()),
            company_id=company_id,
            body=body,
            author=author,
            created_at=_now(),
        )
        self.company_notes[note.id] = note
        self.write_count += 1
        return copy.copy(note)

    async def list_company_notes(self, company_id: str) -> list[CompanyNoteRecord]:
        notes = [note for note in self.company_notes.values() if note.company_id == company_id]
        notes.sort(key=lambda note: (note.created_at, note.id))
        return [copy.copy(note) for note in notes]

    async def update_lead_status(
        self,
        company_id: str,
        *,
        leads_generated: bool,
        generated_by: str | None,
    ) -> CompanyRecord:
        company = self.companies.get(company_id)
        if company is None:
            raise RepositoryNotFoundError("company not found")
        if not company.is_active:
            raise RepositoryConflictError("company has been merged")
        company.leads_generated = leads_generated
        company.leads_generated_at = _now() if leads_generated else None
        company.leads_generated_by = generated_by if leads_generated else None
        self.write_count += 1
        return copy.copy(company)

    async def reassign_dependents(self, from_company_id: str, to_company_id: str) -> int:
        source = self.companies.get(from_company_id)
        target = self.companies.get(to_company_id)
        if source is None or target is None:
            raise RepositoryNotFoundError("company not found")

        moved = 0
        target_links = self.company_sources.setdefault(to_company_id, {})
        for job_id, linked_at in self.company_sources.pop(from_company_id, {}).items():
            if job_id not in target_links:
                target_links[job_id] = linked_at
                moved += 1

        for note in self.company_notes.values():
            if note.company_id == from_company_id:
                note.company_id = to_company_id
                moved += 1

        if source.leads_generated and not target.leads_generated:
            target.leads_generated = True
            target.leads_generated_at = source.leads_generated_at
            target.leads_generated_by = source.leads_generated_by
            moved += 1

        self.write_count += 1
        return moved

    async def merge_company(self, primary_id: str, duplicate_id: str) -> CompanyRecord:
        if primary_id == duplicate_id:
            raise RepositoryConflictError("primary and duplicate company ids must differ")
        primary = self.companies.get(primary_id)
        duplicate = self.companies.get(duplicate_id)
        if primary is None or duplicate is None:
            raise RepositoryNotFoundError("company not found")
        if not primary.is_active:
            raise RepositoryConflictError("primary company has been merged")
        if not duplicate.is_active:
            raise RepositoryConflictError("duplicate company already merged")

        snapshot = (
            copy.deepcopy(self.companies),
            copy.deepcopy(self.company_sources),
            copy.deepcopy(self.company_notes),
        )
        try:
            await self.reassign_dependents(duplicate_id, primary_id)
            self.companies[duplicate_id].merged_into = primary_id
            self.write_count += 1
        except Exception:
            self.companies, self.company_sources, self.company_notes = snapshot
            raise
        return copy.copy(self.companies[primary_id])

    async def count_companies(self) -> dict[str, int]:
        active = sum(1 for row in self.companies.values() if row.is_active)
        return {"active": active, "merged": len(self.companies) - active}

    async def insert_queue_job(self, job: QueueJobRecord) -> QueueJobRecord:
        self.queue_jobs[job.id] = copy.deepcopy(job)
        self.write_count += 1
        return copy.deepcopy(job)

    async def get_queue_job(self, job_id: str) -> QueueJobRecord | None:
        job = self.queue_jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_queue_jobs(self, status: str | None = None, limit: int = 100) -> list[QueueJobRecord]:
        rows = [row for row in self.queue_jobs.values() if status is None or row.status == status]
        rows.sort(key=lambda row: (-row.priority, row.created_at))
        return [copy.deepcopy(row) for row in rows[: max(0, limit)]]

    async def claim_next_queue_job(self) -> QueueJobRecord | None:
        pending = await self.list_queue_jobs("pending", limit=1)
        if not pending:
            return None
        return await self.update_queue_job(
            pending[0].id,
            expected_status="pending",
            changes={"status": "processing", "started_at": _now()},
        )

    async def update_queue_job(
        self,
        job_id: str,
        *,
        expected_status: str,
        changes: dict[str, Any],
    ) -> QueueJobRecord | None:
        job = self.queue_jobs.get(job_id)
        if job is None or job.status != expected_status:
            return None
        updated = replace(job, **changes)
        self.queue_jobs[job_id] = updated
        self.write_count += 1
        return copy.deepcopy(updated)

    async def delete_dead_queue_jobs(self) -> int:
        dead = [job_id for job_id, job in self.queue_jobs.items() if job.is_dead]
        for job_id in dead:
            del self.queue_jobs[job_id]
        if dead:
            self.write_count += 1
        return len(dead)

    async def count_queue_jobs(self) -> dict[str, int]:
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "dead": 0}
        for job in self.queue_jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
            if job.is_dead:
                counts["dead"] += 1
        return counts


def _now() -> datetime:
    return datetime.now(timezone.utc)


Store = InMemoryStore | PostgresRepository
