"""System prompts and message builders for the extraction model."""
from __future__ import annotations

import json
from typing import Any

JOB_INSTRUCTIONS = """You are a job posting parser. Given the text of a job posting page,
extract structured job information. Be thorough but concise.

Guidelines:
- Extract the exact job title as shown
- Get the company name from the page content
- Parse location, job type and experience level from the posting
- Set isRemote to true only when the posting says the role is remote
- Extract qualifications, responsibilities and benefits as lists
- Include salary information if visible (salaryMin, salaryMax, salaryCurrency)
- Note application URLs if present
- If information is not clearly present, omit the field rather than guessing

Respond with a single JSON object only."""

RESUME_INSTRUCTIONS = """You are a resume parser. Given plain text extracted from a resume document,
extract structured resume information. Be thorough and preserve ALL information.

Field naming conventions (must match exactly):
- contact: name, email, phone, location, linkedIn, github, portfolio
- summary: headline, summary
- experience entries: company, title, location, startDate, endDate, current, highlights
- education entries: institution, degree, field, location, startDate, endDate, current, gpa, honors, coursework
- skills: categories array, each with name and skills array
- projects entries: name, description, url, startDate, endDate, current, technologies, highlights
- certifications entries: name, issuer, issueDate, expirationDate, credentialId, credentialUrl, noExpiration
- languages: entries array, each with language and proficiency
- volunteer entries: organization, role, location, startDate, endDate, current, highlights
- awards entries: title, issuer, date, description
- customSections entries: title, content, items

Use YYYY-MM for dates where the month is known, YYYY otherwise.
Respond with a single JSON object only."""

COMPANY_INSTRUCTIONS = """You are a company research assistant. Given a company name and the text
of one of its job postings, infer what you can about the company.

Guidelines:
- industry: the primary industry (e.g. "Software", "Healthcare", "Finance")
- size: one of startup, small, medium, large, enterprise
- description: one or two sentences on what the company does
- headquarters: city and country if mentioned
- domain: the company website domain if it appears in the content
- Only include information that can be reasonably inferred; omit anything else

Respond with a single JSON object only."""


def build_messages(
    *,
    instructions: str,
    schema_name: str,
    json_schema: dict[str, Any],
    text: str,
) -> list[dict[str, str]]:
    """Chat messages for one extraction request."""
    user = (
        f"Target schema: {schema_name}\n"
        f"JSON schema:\n{json.dumps(json_schema, separators=(',', ':'))}\n\n"
        f"Content:\n{text}"
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": user},
    ]
