"""Entity resolution: match extracted companies/jobs against the store.

Company matching order:
1. exact domain (case-insensitive, scheme/www/path stripped, ATS hosts ignored)
2. exact normalized name
3. otherwise a new stub with no id; the store assigns one on persist

Resolution reads the store but never writes to it.
"""
from __future__ import annotations

import logging
import re

from rapidfuzz import fuzz, process

from jobstream.config import PipelineSettings, settings as app_settings
from jobstream.domain import Company, ExtractedJobData, Job
from jobstream.errors import ErrorKind, ResolutionError
from jobstream.pipelines.normalization import is_ats_host, normalize_domain, normalize_name, normalize_url
from jobstream.store import Store

logger = logging.getLogger(__name__)

REMOTE_LOCATION = "Remote"

_REMOTE = re.compile(r"\bremote\b", re.IGNORECASE)


def clean_str(value: str | None) -> str | None:
    """Trim a string; ``None`` stays ``None`` and ``""`` stays ``""``."""
    if value is None:
        return None
    return value.strip()


def clean_list(values: list[str] | None) -> list[str] | None:
    """Trim entries and drop blank ones; ``None`` stays ``None``."""
    if values is None:
        return None
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


class EntityResolver:
    """Decides create-vs-merge for companies and builds Job records."""

    def __init__(self, store: Store, config: PipelineSettings | None = None) -> None:
        self.store = store
        self.config = config or app_settings.pipeline

    async def resolve_company(
        self,
        extracted: ExtractedJobData,
        *,
        domain_hint: str | None = None,
    ) -> Company | None:
        """Find the stored company for an extraction or build a new stub.

        Args:
            extracted: Model output for one posting
            domain_hint: Company domain or any URL on it (ATS hosts are ignored)

        Returns:
            Stored Company (with id), new Company stub (id None), or None when
            neither a name nor a domain is known
        """
        domain = normalize_domain(domain_hint)
        if is_ats_host(domain):
            domain = None
        name = clean_str(extracted.company_name) or None

        if domain:
            existing = await self.store.get_company_by_domain(domain)
            if existing is not None:
                logger.debug(f"Matched company {existing.company_id} by domain {domain}")
                if existing.name is None and name:
                    return existing.model_copy(update={"name": name})
                return existing

        if name:
            matched = await self._match_by_name(name, domain)
            if matched is not None:
                return matched

        if domain:
            return Company.from_domain(domain, name=name)
        if name:
            return Company.from_name(name)
        return None

    async def _match_by_name(self, name: str, domain: str | None) -> Company | None:
        matches = await self.store.find_companies_by_name(name)
        if domain:
            # A stored company with a different domain is a different company
            matches = [c for c in matches if c.domain is None or c.domain == domain]
        if len(matches) == 1:
            return self._adopt(matches[0], domain)

        try:
            if len(matches) > 1:
                raise ResolutionError(
                    ErrorKind.AMBIGUOUS_MATCH,
                    f"{len(matches)} companies named {name!r}",
                    candidates=matches,
                )
            await self._check_near_duplicates(name)
        except ResolutionError as e:
            logger.warning(
                f"Ambiguous company match, falling back: {e.message}",
                extra={"failure_kind": e.kind.value, "candidates": [c.company_id for c in e.candidates]},
            )
            if e.candidates:
                return self._adopt(e.candidates[0], domain)
        return None

    @staticmethod
    def _adopt(match: Company, domain: str | None) -> Company:
        if domain and match.domain is None:
            return match.model_copy(update={"domain": domain})
        return match

    async def _check_near_duplicates(self, name: str) -> None:
        """Raise AmbiguousMatch when a stored name is close but not equal."""
        target = normalize_name(name)
        companies = await self.store.list_companies()
        known = sorted({n for n in (normalize_name(c.name) for c in companies) if n})
        if not target or not known:
            return
        hit = process.extractOne(target, known, scorer=fuzz.ratio, score_cutoff=self.config.fuzzy_threshold)
        if hit is not None:
            raise ResolutionError(
                ErrorKind.AMBIGUOUS_MATCH,
                f"{name!r} is close to existing company {hit[0]!r} (score {hit[1]:.0f}); creating new",
            )

    def resolve_job(
        self,
        extracted: ExtractedJobData,
        company: Company | None,
        *,
        source_url: str | None = None,
        raw_text: str | None = None,
    ) -> Job:
        """Build the Job record for an extraction.

        Absent fields stay absent. ``salary_currency`` is left unset when the
        extraction has none, so the record default applies to new jobs and a
        stored currency survives a merge. The store assigns the dedup key.
        """
        title = extracted.title.strip()

        location = clean_str(extracted.location)
        if location is None and extracted.is_remote is not False:
            if extracted.is_remote or (raw_text and _REMOTE.search(raw_text)):
                location = REMOTE_LOCATION

        optional = {}
        if extracted.salary_currency is not None:
            optional["salary_currency"] = extracted.salary_currency.strip()

        return Job(
            company_id=company.company_id if company else None,
            title=title,
            description=clean_str(extracted.description),
            location=location,
            job_type=clean_str(extracted.job_type),
            experience_level=clean_str(extracted.experience_level),
            education_level=clean_str(extracted.education_level),
            salary_min=extracted.salary_min,
            salary_max=extracted.salary_max,
            qualifications=clean_list(extracted.qualifications),
            preferred_qualifications=clean_list(extracted.preferred_qualifications),
            responsibilities=clean_list(extracted.responsibilities),
            benefits=clean_list(extracted.benefits),
            category=clean_str(extracted.category),
            source_url=normalize_url(source_url) if source_url else None,
            application_url=clean_str(extracted.application_url),
            posted_date=clean_str(extracted.posted_date),
            closing_date=clean_str(extracted.closing_date),
            **optional,
        )
