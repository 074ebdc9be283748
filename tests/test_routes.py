from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from stacksignal.core.config import Settings
from stacksignal.main import create_app
from stacksignal.services.analysis import AnalysisVerdict
from stacksignal.services.container import ServiceContainer, build_services
from stacksignal.services.dedupe import normalize
from stacksignal.services.processor import ProcessingRun
from stacksignal.services.records import CompanyRecord, JobPostingRecord
from stacksignal.services.repository import RepositoryUnavailableError
from stacksignal.services.store import InMemoryStore


class KeywordEngine:
    async def analyze(self, posting: JobPostingRecord) -> AnalysisVerdict:
        if "Outreach.io" in posting.description:
            return AnalysisVerdict(
                uses_tool=True,
                tool_detected="Outreach.io",
                signal_type="required",
                confidence="high",
                context="Outreach.io",
            )
        return AnalysisVerdict(uses_tool=False, tool_detected="None")


class UnavailableStore(InMemoryStore):
    async def fetch_unprocessed_postings(self, limit: int) -> list[JobPostingRecord]:
        raise RepositoryUnavailableError("database unavailable")

    async def count_queue_jobs(self) -> dict[str, int]:
        raise RepositoryUnavailableError("database unavailable")


def test_processor_batch_runs_and_reports_status() -> None:
    client, services = _client()
    _seed_postings(services, ["Acme Inc", "Beta"])

    response = client.post("/processor/batch", json={"limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["jobs_processed"] == 2
    assert body["tools_detected"] == 1
    assert body["remaining_unprocessed"] == 0

    status_response = client.get("/processor/status")
    assert status_response.status_code == 200
    assert status_response.json()["is_running"] is False
    assert status_response.json()["totals"]["batches_run"] == 1

    empty_body = client.post("/processor/batch")
    assert empty_body.status_code == 200
    assert empty_body.json()["message"] == "No unprocessed jobs"


def test_processor_routes_map_busy_and_unavailable_states() -> None:
    client, services = _client()
    services.processor.run = ProcessingRun(is_running=True, kind="batch")

    busy_batch = client.post("/processor/batch", json={})
    assert busy_batch.status_code == 409
    assert busy_batch.json()["busy"] is True

    busy_single = client.post("/processor/jobs/job-0")
    assert busy_single.status_code == 409

    stop = client.post("/processor/stop")
    assert stop.json() == {"success": True, "message": "stop requested; the run halts after the current item"}

    services.processor.run = ProcessingRun()
    assert client.post("/processor/stop").json()["success"] is False
    assert client.post("/processor/jobs/missing").status_code == 404

    unavailable_client, _ = _client(store=UnavailableStore())
    assert unavailable_client.post("/processor/batch", json={"limit": 5}).status_code == 503
    assert unavailable_client.get("/queue/stats").status_code == 503


def test_processor_single_job_returns_item_result() -> None:
    client, services = _client()
    _seed_postings(services, ["Acme"])

    response = client.post("/processor/jobs/job-0")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["uses_tool"] is True
    assert body["verdict"]["tool_detected"] == "Outreach.io"
    assert body["company_id"]


def test_queue_routes_cover_lifecycle() -> None:
    client, services = _client(queue_max_size=2)

    created = client.post("/queue/jobs", json={"type": "process_batch", "payload": {"limit": 5}, "priority": 80})
    assert created.status_code == 201
    job_id = created.json()["id"]

    fetched = client.get(f"/queue/jobs/{job_id}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "pending"
    assert fetched.json()["priority"] == 80

    assert client.get("/queue/jobs/unknown").status_code == 404
    assert [row["id"] for row in client.get("/queue/jobs", params={"status": "pending"}).json()] == [job_id]
    assert client.get("/queue/jobs", params={"status": "bogus"}).status_code == 422

    retry = client.post(f"/queue/jobs/{job_id}/retry")
    assert retry.status_code == 200
    assert retry.json()["success"] is False

    cancel = client.post(f"/queue/jobs/{job_id}/cancel")
    assert cancel.json()["success"] is True

    assert client.post("/queue/jobs", json={"type": "a"}).status_code == 201
    assert client.post("/queue/jobs", json={"type": "b"}).status_code == 201
    assert client.post("/queue/jobs", json={"type": "c"}).status_code == 429
    assert client.post("/queue/jobs", json={"type": ""}).status_code == 422

    stats = client.get("/queue/stats").json()
    assert stats["dead"] == 1
    assert stats["pending"] == 2

    cleared = client.post("/queue/clear")
    assert cleared.json()["removed"] == 1
    assert client.get("/queue/stats").json()["total"] == 2


def test_company_routes_deduplicate_merge_and_update_leads() -> None:
    client, services = _client()
    primary = _add_company(services, "Acme Corporation")
    duplicate = _add_company(services, "Acme Holdings")
    _add_company(services, "Beta Systems LLC")

    dedup = client.post("/companies/deduplicate", json={"name": "ACME Corp."})
    assert dedup.status_code == 200
    assert dedup.json()["match_type"] == "exact"
    assert dedup.json()["matched_id"] == primary.id

    similar = client.get("/companies/similar", params={"name": "Acme Corp", "threshold": 0.7})
    assert [row["name"] for row in similar.json()] == ["Acme Corporation"]

    merged = client.post("/companies/merge", json={"primary_id": primary.id, "duplicate_ids": [duplicate.id, "missing"]})
    assert merged.status_code == 200
    assert merged.json()["success"] is False
    assert [row["success"] for row in merged.json()["results"]] == [True, False]

    stats = client.get("/companies/stats").json()
    assert stats == {"total_active": 2, "total_merged": 1, "dedup_rate": 0.3333}

    updated = client.patch(
        f"/companies/{primary.id}/lead-status",
        json={"leads_generated": True, "generated_by": "sam", "notes": "sequenced"},
    )
    assert updated.status_code == 200
    assert updated.json()["leads_generated"] is True

    detail = client.get(f"/companies/{primary.id}").json()
    assert [note["body"] for note in detail["notes"]] == ["sequenced"]

    assert client.patch(f"/companies/{duplicate.id}/lead-status", json={"leads_generated": True}).status_code == 409
    assert client.patch("/companies/missing/lead-status", json={"leads_generated": True}).status_code == 404
    assert client.get("/companies/missing").status_code == 404


def _client(*, store: InMemoryStore | None = None, queue_max_size: int = 1000) -> tuple[TestClient, ServiceContainer]:
    settings = Settings(
        otel_enabled=False,
        batch_delay_seconds=0.0,
        worker_enabled=False,
        queue_max_size=queue_max_size,
    )
    services = build_services(settings, store=store or InMemoryStore(), engine=KeywordEngine())
    return TestClient(create_app(settings=settings, services=services)), services


def _seed_postings(services: ServiceContainer, companies: list[str]) -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index, company in enumerate(companies):
        description = "Experience with Outreach.io required" if index == 0 else "Cold calling"
        asyncio.run(
            services.store.insert_posting(
                JobPostingRecord(
                    id=f"job-{index}",
                    company=company,
                    title="SDR",
                    description=description,
                    scraped_at=base + timedelta(minutes=index),
                )
            )
        )


def _add_company(services: ServiceContainer, name: str) -> CompanyRecord:
    return asyncio.run(
        services.store.upsert_company(
            company_id=None,
            raw_name=name,
            normalized_name=normalize(name),
            tool_detected="SalesLoft",
            signal_type="preferred",
            confidence="medium",
            context="",
            source_job_id=None,
        )
    )
