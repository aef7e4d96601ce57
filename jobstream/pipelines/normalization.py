"""Text, URL and name normalization used by extraction and entity resolution.

Handles HTML stripping, whitespace, punctuation, and the canonical forms of
domains, URLs, company names and job titles used in dedup keys.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from config.status_signals import ATS_HOSTS, GREENHOUSE_HOSTS

logger = logging.getLogger(__name__)

# Tags whose content is never posting text
_NOISE_TAGS = ["script", "style", "noscript", "iframe", "svg", "head", "nav", "footer", "form"]

_HTML_HINT = re.compile(r"<\s*(html|body|div|p|br|li|span|h[1-6]|section|article)\b", re.IGNORECASE)

_COMPANY_SUFFIXES = re.compile(
    r"[,\s]+(inc|incorporated|corp|corporation|co|company|llc|ltd|limited|gmbh|plc|sa|ag)\.?$",
    re.IGNORECASE,
)


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize smart quotes and dashes."""
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")
    text = text.replace('–', '-').replace('—', '-')
    return text


def looks_like_html(text: str) -> bool:
    return bool(_HTML_HINT.search(text))


def clean_html(text: str) -> str:
    """Strip markup and noise elements, keeping visible text.

    JSON-LD blocks are kept because boards often put the posting there.
    """
    soup = BeautifulSoup(text, "html.parser")
    json_ld = [
        tag.string or "" for tag in soup.find_all("script", attrs={"type": "application/ld+json"})
    ]
    for tag in soup.find_all(_NOISE_TAGS):
        tag.decompose()
    body = soup.get_text(separator="\n")
    if json_ld:
        return "\n\n".join(json_ld + [body])
    return body


def html_title(text: str) -> str | None:
    """Return the document <title>, if any."""
    soup = BeautifulSoup(text, "html.parser")
    if soup.title and soup.title.string:
        title = normalize_whitespace(soup.title.string)
        return title or None
    return None


def normalize_text(
    text: str,
    *,
    max_chars: int | None = None,
    clean_html_tags: bool = True,
) -> str:
    """Normalize raw posting/résumé text before it goes to the model.

    Args:
        text: Input text (plain or HTML)
        max_chars: Truncate to this many characters after cleaning
        clean_html_tags: Strip HTML when the text looks like markup

    Returns:
        Normalized text, or "" when nothing meaningful is left
    """
    if not text or not text.strip():
        return ""

    if clean_html_tags and looks_like_html(text):
        text = clean_html(text)

    text = unicodedata.normalize('NFC', text)
    text = normalize_punctuation(text)

    # Keep line structure, collapse runs inside lines
    lines = [normalize_whitespace(line) for line in text.splitlines()]
    text = "\n".join(line for line in lines if line)

    if max_chars is not None and len(text) > max_chars:
        logger.debug(f"Truncating input from {len(text)} to {max_chars} chars")
        text = text[:max_chars]

    return text


def _split(url: str) -> tuple[str, str, str]:
    raw = url.strip()
    if "://" not in raw:
        raw = "https://" + raw
    parts = urlsplit(raw)
    return (parts.scheme or "https").lower(), (parts.hostname or "").lower(), parts.path or ""


def normalize_domain(value: str | None) -> str | None:
    """Canonical company domain: lowercase host, no scheme, no ``www.``, no path."""
    if not value or not value.strip():
        return None
    try:
        _, host, _ = _split(value)
    except ValueError:
        return None
    if host.startswith("www."):
        host = host[4:]
    host = host.rstrip(".")
    return host or None


def normalize_url(url: str) -> str:
    """Canonical URL: lowercase scheme/host, no query or fragment, no trailing slash."""
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return url
    if not parts.hostname:
        return url
    scheme = (parts.scheme or "https").lower()
    host = parts.hostname.lower()
    netloc = host
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{host}:{port}"
    path = parts.path.rstrip("/")
    return f"{scheme}://{netloc}{path}"


def is_ats_host(domain: str | None) -> bool:
    if not domain:
        return False
    return any(domain == host or domain.endswith("." + host) for host in ATS_HOSTS)


def company_domain_from_url(url: str | None) -> str | None:
    """Company domain implied by a posting URL, unless the URL is an ATS board."""
    domain = normalize_domain(url)
    if domain is None or is_ats_host(domain):
        return None
    return domain


def greenhouse_board_token(url: str | None) -> str | None:
    """Extract the Greenhouse board token from a board or board-API URL."""
    if not url:
        return None
    try:
        _, host, path = _split(url)
    except ValueError:
        return None
    if host not in GREENHOUSE_HOSTS:
        return None
    segments = [s for s in path.split("/") if s]
    if host == "boards-api.greenhouse.io":
        if len(segments) >= 3 and segments[0] == "v1" and segments[1] == "boards":
            return segments[2]
        return None
    return segments[0] if segments else None


def normalize_name(name: str | None) -> str | None:
    """Canonical company name for exact matching: casefolded, no legal suffix."""
    if name is None:
        return None
    value = normalize_punctuation(unicodedata.normalize('NFKC', name)).casefold()
    value = normalize_whitespace(value)
    value = _COMPANY_SUFFIXES.sub("", value).strip(" ,.")
    return value or None


def normalize_title(title: str) -> str:
    value = normalize_punctuation(unicodedata.normalize('NFKC', title)).casefold()
    return normalize_whitespace(value)


def normalize_location(location: str | None) -> str:
    if not location:
        return ""
    return normalize_whitespace(location.casefold())
