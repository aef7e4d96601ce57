"""Extraction client: turns raw text into structured records through an AI gateway.

The gateway speaks the OpenAI chat-completions shape. One request per attempt;
transient failures are retried with exponential backoff and jitter, while
schema failures are returned immediately.
"""
from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Union

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from jobstream.config import ExtractionSettings, settings as app_settings
from jobstream.domain import ExtractedCompanyData, ExtractedJobData, ExtractedResumeData
from jobstream.errors import ErrorKind, ExtractionError
from jobstream.pipelines.normalization import normalize_text

from extraction.prompts import COMPANY_INSTRUCTIONS, JOB_INSTRUCTIONS, RESUME_INSTRUCTIONS, build_messages

logger = logging.getLogger(__name__)

Extracted = Union[ExtractedJobData, ExtractedResumeData, ExtractedCompanyData]

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ExtractionSchema(str, Enum):
    """Target record shape for an extraction request."""
    JOB = "job"
    RESUME = "resume"
    COMPANY = "company"

    @property
    def model(self) -> type[BaseModel]:
        return _MODELS[self]

    @property
    def instructions(self) -> str:
        return _INSTRUCTIONS[self]


_MODELS: dict[ExtractionSchema, type[BaseModel]] = {
    ExtractionSchema.JOB: ExtractedJobData,
    ExtractionSchema.RESUME: ExtractedResumeData,
    ExtractionSchema.COMPANY: ExtractedCompanyData,
}

_INSTRUCTIONS = {
    ExtractionSchema.JOB: JOB_INSTRUCTIONS,
    ExtractionSchema.RESUME: RESUME_INSTRUCTIONS,
    ExtractionSchema.COMPANY: COMPANY_INSTRUCTIONS,
}


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionError) and exc.retryable


def _error_for_status(status_code: int, body: str) -> ExtractionError | None:
    snippet = body[:200]
    if status_code == 408:
        return ExtractionError(ErrorKind.TIMEOUT, f"gateway timed out (HTTP 408): {snippet}")
    if status_code == 429:
        return ExtractionError(ErrorKind.RATE_LIMITED, f"rate limited (HTTP 429): {snippet}")
    if status_code >= 500:
        return ExtractionError(ErrorKind.UPSTREAM_UNAVAILABLE, f"gateway error (HTTP {status_code}): {snippet}")
    if status_code >= 400:
        return ExtractionError(ErrorKind.INVALID_SCHEMA, f"request rejected (HTTP {status_code}): {snippet}")
    return None


def _error_for_envelope(error: Any) -> ExtractionError:
    if isinstance(error, dict):
        code = str(error.get("code") or error.get("type") or "")
        message = str(error.get("message") or code or error)
    else:
        code, message = "", str(error)
    if code in {"429", "rate_limit_exceeded", "rate_limited"}:
        return ExtractionError(ErrorKind.RATE_LIMITED, message)
    return ExtractionError(ErrorKind.UPSTREAM_UNAVAILABLE, f"gateway error envelope: {message}")


def parse_content(content: Any) -> dict[str, Any]:
    """Parse the model's message content into a JSON object.

    Raises:
        ExtractionError: InvalidSchema when the content is not a JSON object
    """
    if isinstance(content, dict):
        return content
    if not isinstance(content, str) or not content.strip():
        raise ExtractionError(ErrorKind.INVALID_SCHEMA, "model returned no content")
    text = _FENCE.sub("", content.strip())
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExtractionError(ErrorKind.INVALID_SCHEMA, f"model returned malformed JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ExtractionError(ErrorKind.INVALID_SCHEMA, "model returned JSON that is not an object")
    return parsed


class ExtractionClient:
    """Async client for the extraction gateway.

    One ``httpx.AsyncClient`` (and its connection pool) is shared by every
    concurrent ``extract`` call made through this instance.
    """

    def __init__(
        self,
        config: ExtractionSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or app_settings.extraction
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def __aenter__(self) -> ExtractionClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def extract(self, raw_text: str, schema: ExtractionSchema | str) -> Extracted:
        """Extract a structured record from raw text.

        Args:
            raw_text: Posting or résumé text (plain text or HTML)
            schema: Target shape, ``job`` or ``resume``

        Returns:
            ExtractedJobData or ExtractedResumeData

        Raises:
            ExtractionError: Timeout, RateLimited or UpstreamUnavailable after
                retries are exhausted; InvalidSchema immediately
        """
        schema = ExtractionSchema(schema)
        text = normalize_text(raw_text, max_chars=self.config.max_input_chars)
        if not text:
            raise ExtractionError(ErrorKind.INVALID_SCHEMA, "input is empty after normalization")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.config.backoff_initial,
                max=self.config.backoff_max,
                jitter=self.config.backoff_jitter,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        payload: dict[str, Any] = {}
        async for attempt in retrying:
            with attempt:
                payload = await self._request(text, schema, attempt.retry_state.attempt_number)

        try:
            record = schema.model.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                f"Extraction output failed {schema.value} validation: {e.error_count()} error(s)",
                extra={"schema": schema.value},
            )
            raise ExtractionError(ErrorKind.INVALID_SCHEMA, f"output does not match {schema.value} schema: {e}") from e

        logger.info(f"Extracted {schema.value} record", extra={"schema": schema.value})
        return record

    async def _request(self, text: str, schema: ExtractionSchema, attempt: int) -> dict[str, Any]:
        body = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "response_format": {"type": "json_object"},
            "messages": build_messages(
                instructions=schema.instructions,
                schema_name=schema.value,
                json_schema=schema.model.model_json_schema(by_alias=True),
                text=text,
            ),
        }
        logger.debug(f"Extraction request attempt {attempt}", extra={"schema": schema.value, "attempt": attempt})

        try:
            response = await self._client.post("/chat/completions", json=body)
        except httpx.TimeoutException as e:
            raise ExtractionError(ErrorKind.TIMEOUT, f"gateway request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ExtractionError(ErrorKind.UPSTREAM_UNAVAILABLE, f"gateway unreachable: {e}") from e

        error = _error_for_status(response.status_code, response.text)
        if error is not None:
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise ExtractionError(ErrorKind.INVALID_SCHEMA, "gateway returned a non-JSON body") from e

        if isinstance(data, dict) and data.get("error"):
            raise _error_for_envelope(data["error"])

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError(ErrorKind.INVALID_SCHEMA, "gateway response has no message content") from e

        return parse_content(content)
