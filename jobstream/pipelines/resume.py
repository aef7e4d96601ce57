"""Résumé parsing pipeline.

Fetch from object storage, validate and extract text, extract structured data
with the résumé schema, normalize it, persist it. Shares the run state machine
of the job ingestion pipeline.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, TypeVar

from pydantic import BaseModel

from extraction.client import ExtractionSchema

from jobstream.config import Settings, settings as app_settings
from jobstream.domain import (
    Award,
    Certification,
    ContactInfo,
    CustomSection,
    Education,
    ExtractedResumeData,
    LanguageEntry,
    LanguagesData,
    Project,
    ResumeDocumentRef,
    SkillCategory,
    SkillsData,
    StructuredResume,
    SummaryInfo,
    VolunteerExperience,
    WorkExperience,
)
from jobstream.errors import PipelineError
from jobstream.executor import TaskExecutor
from jobstream.parsers import parse_document
from jobstream.pipelines.ingest import Extractor, IngestionState, RunResult, with_store_retry
from jobstream.storage import ObjectStorage
from jobstream.store import Store

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MONTHS = {
    "january": "01", "february": "02", "march": "03", "april": "04",
    "may": "05", "june": "06", "july": "07", "august": "08",
    "september": "09", "october": "10", "november": "11", "december": "12",
    "jan": "01", "feb": "02", "mar": "03", "apr": "04", "jun": "06", "jul": "07",
    "aug": "08", "sep": "09", "sept": "09", "oct": "10", "nov": "11", "dec": "12",
}

PROFICIENCY = {
    "native": "native", "native speaker": "native", "mother tongue": "native",
    "fluent": "fluent", "professional": "fluent", "full professional": "fluent",
    "advanced": "advanced", "professional working": "advanced",
    "intermediate": "intermediate", "limited working": "intermediate",
    "beginner": "beginner", "elementary": "beginner", "basic": "beginner",
}

_PRESENT = {"present", "current", "now", "ongoing"}
_NO_EXPIRY = {"none", "no expiration", "n/a", "never"}


def _s(value: str | None) -> str | None:
    """Trimmed string, or None when blank."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def _items(values: list[str] | None, *, dedupe: bool = False) -> list[str] | None:
    if values is None:
        return None
    out = [v.strip() for v in values if v and v.strip()]
    if dedupe:
        seen: set[str] = set()
        unique = []
        for v in out:
            if v.casefold() not in seen:
                seen.add(v.casefold())
                unique.append(v)
        out = unique
    return out


def _url(value: str | None) -> str | None:
    value = _s(value)
    if value is None:
        return None
    if value.startswith(("http://", "https://")):
        return value
    return f"https://{value}"


def _id(value: str | None) -> str:
    return _s(value) or str(uuid.uuid4())


def _proficiency(value: str | None) -> str | None:
    value = _s(value)
    if value is None:
        return None
    return PROFICIENCY.get(value.lower(), value.lower())


def normalize_date(value: str | None) -> str | None:
    """Convert a résumé date to ``YYYY-MM``.

    Accepts ``YYYY-MM``, ``YYYY``, ``MM/YYYY`` and ``Month YYYY``. Returns None
    for blanks, "present" and anything unparseable.
    """
    value = _s(value)
    if value is None or value.lower() in _PRESENT:
        return None
    if re.fullmatch(r"\d{4}-\d{2}", value):
        return value
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        return value[:7]
    if re.fullmatch(r"\d{4}", value):
        return f"{value}-01"
    m = re.fullmatch(r"(\d{1,2})/(\d{4})", value)
    if m:
        return f"{m.group(2)}-{int(m.group(1)):02d}"
    parts = value.replace(",", " ").split()
    if len(parts) >= 2:
        month = MONTHS.get(parts[0].lower().rstrip("."))
        year = next((p for p in parts if re.fullmatch(r"\d{4}", p)), None)
        if month and year:
            return f"{year}-{month}"
    return None


def _span(start: str | None, end: str | None, current: bool | None) -> dict:
    """start/end/current for a dated entry; an end of "present" means current."""
    end_raw = _s(end)
    is_current = bool(current) or (end_raw is not None and end_raw.lower() in _PRESENT)
    return {
        "start_date": normalize_date(start),
        "end_date": None if is_current else normalize_date(end_raw),
        "current": is_current,
    }


def _entries(values: list[M] | None, fn: Callable[[M], M], keep: Callable[[M], bool]) -> list[M] | None:
    if values is None:
        return None
    return [e for e in (fn(v) for v in values) if keep(e)]


def normalize_resume(data: ExtractedResumeData) -> ExtractedResumeData:
    """Trim, drop empty entries, dedupe skills, assign ids, normalize dates and URLs."""
    contact = data.contact and ContactInfo(
        name=_s(data.contact.name),
        email=(_s(data.contact.email) or "").lower() or None,
        phone=_s(data.contact.phone),
        location=_s(data.contact.location),
        linked_in=_url(data.contact.linked_in),
        github=_url(data.contact.github),
        portfolio=_url(data.contact.portfolio),
    )
    summary = data.summary and SummaryInfo(headline=_s(data.summary.headline), summary=_s(data.summary.summary))

    experience = _entries(
        data.experience,
        lambda e: WorkExperience(
            id=_id(e.id), company=_s(e.company), title=_s(e.title), location=_s(e.location),
            highlights=_items(e.highlights), **_span(e.start_date, e.end_date, e.current),
        ),
        lambda e: bool(e.company or e.title),
    )
    education = _entries(
        data.education,
        lambda e: Education(
            id=_id(e.id), institution=_s(e.institution), degree=_s(e.degree), field=_s(e.field),
            location=_s(e.location), gpa=_s(e.gpa), honors=_s(e.honors), coursework=_items(e.coursework),
            **_span(e.start_date, e.end_date, e.current),
        ),
        lambda e: bool(e.institution or e.degree),
    )
    skills = data.skills and SkillsData(
        categories=_entries(
            data.skills.categories,
            lambda c: SkillCategory(id=_id(c.id), name=_s(c.name), skills=_items(c.skills, dedupe=True)),
            lambda c: bool(c.name or c.skills),
        )
    )
    projects = _entries(
        data.projects,
        lambda p: Project(
            id=_id(p.id), name=_s(p.name), description=_s(p.description), url=_url(p.url),
            technologies=_items(p.technologies, dedupe=True), highlights=_items(p.highlights),
            **_span(p.start_date, p.end_date, p.current),
        ),
        lambda p: bool(p.name),
    )

    def _certification(c: Certification) -> Certification:
        expiry = _s(c.expiration_date)
        no_expiry = bool(c.no_expiration) or (expiry is not None and expiry.lower() in _NO_EXPIRY)
        return Certification(
            id=_id(c.id), name=_s(c.name), issuer=_s(c.issuer), issue_date=normalize_date(c.issue_date),
            expiration_date=None if no_expiry else normalize_date(expiry),
            credential_id=_s(c.credential_id), credential_url=_url(c.credential_url), no_expiration=no_expiry,
        )

    certifications = _entries(data.certifications, _certification, lambda c: bool(c.name))
    languages = data.languages and LanguagesData(
        entries=_entries(
            data.languages.entries,
            lambda e: LanguageEntry(id=_id(e.id), language=_s(e.language), proficiency=_proficiency(e.proficiency)),
            lambda e: bool(e.language),
        )
    )
    volunteer = _entries(
        data.volunteer,
        lambda v: VolunteerExperience(
            id=_id(v.id), organization=_s(v.organization), role=_s(v.role), location=_s(v.location),
            highlights=_items(v.highlights), **_span(v.start_date, v.end_date, v.current),
        ),
        lambda v: bool(v.organization or v.role),
    )
    awards = _entries(
        data.awards,
        lambda a: Award(
            id=_id(a.id), title=_s(a.title), issuer=_s(a.issuer),
            date=normalize_date(a.date), description=_s(a.description),
        ),
        lambda a: bool(a.title),
    )
    custom_sections = _entries(
        data.custom_sections,
        lambda s: CustomSection(title=s.title.strip(), content=_s(s.content), items=_items(s.items)),
        lambda s: bool(s.title and (s.content or s.items)),
    )

    return ExtractedResumeData(
        contact=contact,
        summary=summary,
        experience=experience,
        education=education,
        skills=skills,
        projects=projects,
        certifications=certifications,
        languages=languages,
        volunteer=volunteer,
        awards=awards,
        custom_sections=custom_sections,
    )


@dataclass
class ResumeResult(RunResult):
    """Result of ``parse_resume``."""
    resume: StructuredResume | None = None

    def unwrap(self) -> StructuredResume:
        if self.error is not None:
            raise self.error
        assert self.resume is not None
        return self.resume


class ResumePipeline:
    """Turns a stored résumé document into a persisted StructuredResume."""

    def __init__(
        self,
        extractor: Extractor,
        store: Store,
        object_storage: ObjectStorage,
        executor: TaskExecutor,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.extractor = extractor
        self.store = store
        self.object_storage = object_storage
        self.executor = executor
        self.settings = settings or app_settings

    async def parse_resume(self, ref: ResumeDocumentRef) -> ResumeResult:
        """Parse one résumé document.

        Args:
            ref: Object storage reference plus owning profile

        Returns:
            ResumeResult in COMPLETED or FAILED state
        """
        return await self.executor.run(self._parse_resume(ref))

    async def _parse_resume(self, ref: ResumeDocumentRef) -> ResumeResult:
        result = ResumeResult(run_id=uuid.uuid4().hex[:12])
        started = time.monotonic()
        log_ctx = {"run_id": result.run_id, "file_id": ref.file_id, "profile_id": ref.profile_id}
        pipeline_cfg = self.settings.pipeline
        logger.info("Resume parse received", extra=log_ctx)

        try:
            result.advance(IngestionState.EXTRACTING)
            content = await with_store_retry(
                pipeline_cfg,
                lambda: self.object_storage.fetch_raw_document(ref),
                run_id=result.run_id,
            )
            # pdf/docx parsing is CPU work; keep it off the event loop
            parsed = await asyncio.to_thread(
                parse_document,
                content,
                filename=ref.filename,
                max_size_mb=self.settings.resume.max_file_size_mb,
            )
            extracted = await self.extractor.extract(parsed.text, ExtractionSchema.RESUME)

            result.advance(IngestionState.RESOLVING)
            normalized = normalize_resume(extracted)
            resume = StructuredResume(
                profile_id=ref.profile_id,
                file_id=ref.file_id,
                data=normalized,
                raw_text=parsed.text,
                parsed_at=datetime.utcnow(),
            )

            result.advance(IngestionState.PERSISTING)
            result.resume = await with_store_retry(
                pipeline_cfg,
                lambda: self.store.save_resume(resume),
                run_id=result.run_id,
            )
            result.advance(IngestionState.COMPLETED)
        except PipelineError as e:
            result.fail(e)
            logger.warning(
                f"Resume parse failed in {result.history[-2].value}: {e.message}",
                extra={**log_ctx, "failure_kind": e.kind.value, "classification": e.classification.value},
            )
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.is_success:
            logger.info(
                f"Parsed resume {result.resume.resume_id}",
                extra={**log_ctx, "duration_ms": result.duration_ms},
            )
        return result
