from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stacksignal.api.deps import get_deduplicator
from stacksignal.schemas.companies import (
    CompanyDetailOut,
    CompanyOut,
    DedupStatsOut,
    DeduplicateOut,
    DeduplicateRequest,
    LeadStatusRequest,
    MergeRequest,
    MergeResultOut,
    SimilarCompanyOut,
)
from stacksignal.services.dedupe import Deduplicator
from stacksignal.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("/deduplicate", response_model=DeduplicateOut)
async def deduplicate(
    payload: DeduplicateRequest,
    deduplicator: Deduplicator = Depends(get_deduplicator),
) -> DeduplicateOut:
    try:
        result = await deduplicator.deduplicate(payload.name)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeduplicateOut(**asdict(result))


@router.get("/similar", response_model=list[SimilarCompanyOut])
async def find_similar(
    name: str = Query(min_length=1),
    threshold: float | None = Query(default=None, ge=0.0, le=1.0),
    deduplicator: Deduplicator = Depends(get_deduplicator),
) -> list[SimilarCompanyOut]:
    try:
        matches = await deduplicator.find_similar(name, threshold)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SimilarCompanyOut(**asdict(match)) for match in matches]


@router.post("/merge", response_model=MergeResultOut)
async def merge_duplicates(
    payload: MergeRequest,
    deduplicator: Deduplicator = Depends(get_deduplicator),
) -> MergeResultOut:
    result = await deduplicator.merge_duplicates(payload.primary_id, payload.duplicate_ids)
    return MergeResultOut(**asdict(result))


@router.get("/stats", response_model=DedupStatsOut)
async def get_stats(deduplicator: Deduplicator = Depends(get_deduplicator)) -> DedupStatsOut:
    try:
        stats = await deduplicator.get_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DedupStatsOut(**asdict(stats))


@router.get("/{company_id}", response_model=CompanyDetailOut)
async def get_company(
    company_id: str,
    deduplicator: Deduplicator = Depends(get_deduplicator),
) -> CompanyDetailOut:
    store = deduplicator.store
    try:
        company = await store.get_company(company_id)
        if company is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")
        sources = await store.list_company_sources(company_id)
        notes = await store.list_company_notes(company_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CompanyDetailOut(
        **asdict(company),
        source_job_ids=sources,
        notes=[asdict(note) for note in notes],
    )


@router.patch("/{company_id}/lead-status", response_model=CompanyOut)
async def update_lead_status(
    company_id: str,
    payload: LeadStatusRequest,
    deduplicator: Deduplicator = Depends(get_deduplicator),
) -> CompanyOut:
    try:
        company = await deduplicator.update_lead_status(
            company_id,
            leads_generated=payload.leads_generated,
            generated_by=payload.generated_by,
            notes=payload.notes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return CompanyOut(**asdict(company))
