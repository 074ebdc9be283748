from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

from rapidfuzz.distance import Levenshtein

from stacksignal.services.analysis import AnalysisVerdict
from stacksignal.services.records import CONFIDENCE_RANK, CompanyRecord, JobPostingRecord
from stacksignal.services.repository import RepositoryConflictError, RepositoryError, RepositoryNotFoundError
from stacksignal.services.store import Store

logger = logging.getLogger(__name__)

_DROP_RE = re.compile(r"[.'’]")
_SEPARATOR_RE = re.compile(r"[\W_]+")
_LEGAL_SUFFIXES = {
    "ag",
    "bv",
    "co",
    "company",
    "corp",
    "corporation",
    "gmbh",
    "inc",
    "incorporated",
    "limited",
    "llc",
    "llp",
    "lp",
    "ltd",
    "nv",
    "plc",
    "pte",
    "pty",
    "pvt",
    "sa",
    "srl",
}

MatchType = Literal["exact", "fuzzy", "none"]


@dataclass(slots=True)
class DedupResult:
    is_duplicate: bool
    match_type: MatchType
    normalized_name: str
    matched_id: str | None = None
    score: float | None = None


@dataclass(slots=True)
class SimilarCompany:
    id: str
    name: str
    normalized_name: str
    score: float


@dataclass(slots=True)
class MergeItemResult:
    duplicate_id: str
    success: bool
    error: str | None = None


@dataclass(slots=True)
class MergeResult:
    primary_id: str
    success: bool
    results: list[MergeItemResult] = field(default_factory=list)

    @property
    def merged_ids(self) -> list[str]:
        return [row.duplicate_id for row in self.results if row.success]


@dataclass(slots=True)
class DedupStats:
    total_active: int
    total_merged: int
    dedup_rate: float


def normalize(name: str) -> str:
    text = _DROP_RE.sub("", name.casefold())
    tokens = _SEPARATOR_RE.sub(" ", text).split()
    while len(tokens) > 1 and tokens[-1] in _LEGAL_SUFFIXES:
        tokens.pop()
    return " ".join(tokens)


def similarity(left: str, right: str) -> float:
    return float(Levenshtein.normalized_similarity(left, right))


def combine_tools(current: str, incoming: str) -> str:
    if current == incoming or incoming == "None":
        return current
    if current == "None":
        return incoming
    return "Both"


class Deduplicator:
    def __init__(self, store: Store, *, similarity_threshold: float = 0.7) -> None:
        self.store = store
        self.similarity_threshold = similarity_threshold

    async def deduplicate(self, name: str) -> DedupResult:
        normalized = normalize(name)
        if not normalized:
            return DedupResult(is_duplicate=False, match_type="none", normalized_name=normalized)

        exact = await self.store.find_companies_by_normalized_name(normalized)
        if exact:
            return DedupResult(
                is_duplicate=True,
                match_type="exact",
                normalized_name=normalized,
                matched_id=exact[0].id,
                score=1.0,
            )

        similar = await self.find_similar(name)
        if similar:
            best = similar[0]
            return DedupResult(
                is_duplicate=True,
                match_type="fuzzy",
                normalized_name=normalized,
                matched_id=best.id,
                score=best.score,
            )
        return DedupResult(is_duplicate=False, match_type="none", normalized_name=normalized)

    async def find_similar(self, name: str, threshold: float | None = None) -> list[SimilarCompany]:
        normalized = normalize(name)
        if not normalized:
            return []
        cutoff = self.similarity_threshold if threshold is None else threshold

        scored: list[tuple[float, CompanyRecord]] = []
        for company in await self.store.list_active_companies():
            score = similarity(normalized, company.normalized_name)
            if score >= cutoff:
                scored.append((score, company))

        scored.sort(key=lambda item: (-item[0], item[1].identified_at, item[1].id))
        return [
            SimilarCompany(
                id=company.id,
                name=company.raw_name,
                normalized_name=company.normalized_name,
                score=round(score, 4),
            )
            for score, company in scored
        ]

    async def merge_duplicates(self, primary_id: str, duplicate_ids: Iterable[str]) -> MergeResult:
        results: list[MergeItemResult] = []
        seen: set[str] = set()
        for duplicate_id in duplicate_ids:
            if duplicate_id in seen:
                continue
            seen.add(duplicate_id)
            try:
                await self.store.merge_company(primary_id, duplicate_id)
            except RepositoryError as exc:
                logger.warning(
                    "Merge failed primary_id=%s duplicate_id=%s error=%s",
                    primary_id,
                    duplicate_id,
                    exc,
                )
                results.append(MergeItemResult(duplicate_id=duplicate_id, success=False, error=str(exc)))
            except Exception as exc:
                logger.exception("Merge crashed primary_id=%s duplicate_id=%s", primary_id, duplicate_id)
                results.append(
                    MergeItemResult(duplicate_id=duplicate_id, success=False, error=f"merge failed: {exc}")
                )
            else:
                results.append(MergeItemResult(duplicate_id=duplicate_id, success=True))

        merged = sum(1 for row in results if row.success)
        logger.info("Merged %s/%s duplicates into primary_id=%s", merged, len(results), primary_id)
        return MergeResult(
            primary_id=primary_id,
            success=all(row.success for row in results),
            results=results,
        )

    async def get_stats(self) -> DedupStats:
        counts = await self.store.count_companies()
        active = counts["active"]
        merged = counts["merged"]
        total = active + merged
        return DedupStats(
            total_active=active,
            total_merged=merged,
            dedup_rate=round(merged / total, 4) if total else 0.0,
        )

    async def record_detection(self, posting: JobPostingRecord, verdict: AnalysisVerdict) -> CompanyRecord:
        match = await self.deduplicate(posting.company)
        if not match.normalized_name:
            raise RepositoryConflictError(f"company name {posting.company!r} is empty after normalization")

        if match.is_duplicate and match.matched_id is not None:
            existing = await self.store.get_company(match.matched_id)
            if existing is None:
                raise RepositoryNotFoundError("company not found")

            stronger = CONFIDENCE_RANK[verdict.confidence] >= CONFIDENCE_RANK[existing.confidence]
            company = await self.store.upsert_company(
                company_id=existing.id,
                raw_name=existing.raw_name,
                normalized_name=existing.normalized_name,
                tool_detected=combine_tools(existing.tool_detected, verdict.tool_detected),
                signal_type=verdict.signal_type if stronger else existing.signal_type,
                confidence=verdict.confidence if stronger else existing.confidence,
                context=verdict.context if stronger else existing.context,
                source_job_id=posting.id,
            )
            logger.info(
                "Updated company_id=%s from job_id=%s match=%s score=%s tool=%s",
                company.id,
                posting.id,
                match.match_type,
                match.score,
                company.tool_detected,
            )
            return company

        company = await self.store.upsert_company(
            company_id=None,
            raw_name=posting.company.strip(),
            normalized_name=match.normalized_name,
            tool_detected=verdict.tool_detected,
            signal_type=verdict.signal_type,
            confidence=verdict.confidence,
            context=verdict.context,
            source_job_id=posting.id,
        )
        logger.info(
            "Identified new company_id=%s name=%r tool=%s from job_id=%s",
            company.id,
            company.raw_name,
            company.tool_detected,
            posting.id,
        )
        return company

    async def update_lead_status(
        self,
        company_id: str,
        *,
        leads_generated: bool,
        generated_by: str | None = None,
        notes: str | None = None,
    ) -> CompanyRecord:
        company = await self.store.update_lead_status(
            company_id,
            leads_generated=leads_generated,
            generated_by=generated_by,
        )
        if notes and notes.strip():
            await self.store.add_company_note(company_id, notes.strip(), author=generated_by)
        return company
