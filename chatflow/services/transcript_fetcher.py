"""
Transcript Fetcher

Downloads raw chat transcripts from a company's chat provider. Fetch
failures are reported in the returned result instead of being raised,
so the caller decides whether a missing transcript is fatal.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from chatflow.common.config import settings

logger = logging.getLogger("transcript_fetcher")

USER_AGENT = "chatflow-transcript-fetcher/1.0"


@dataclass
class TranscriptFetchResult:
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None


def is_valid_transcript_url(url: Optional[str]) -> bool:
    """True if `url` is an http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


SESSION_ID_PATTERNS = (
    re.compile(r"session[_-]?id[:\s]*([a-zA-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"id[:\s]*([a-zA-Z0-9-]{8,})", re.IGNORECASE),
    re.compile(r"^([a-zA-Z0-9-]{8,})", re.MULTILINE),
)


def extract_session_id_from_transcript(content: Optional[str]) -> Optional[str]:
    """Best-effort lookup of a session identifier inside transcript text."""
    if not content:
        return None
    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(1).strip()
    return None


def _network_error_reason(error: Exception) -> str:
    if isinstance(error, httpx.TimeoutException):
        return "Request timeout"

    message = str(error)
    if any(s in message for s in ("ENOTFOUND", "Name or service not known", "nodename nor servname")):
        return "Domain not found"
    if "ECONNREFUSED" in message or "Connection refused" in message:
        return "Connection refused"
    if "timeout" in message.lower():
        return "Request timeout"
    return message or error.__class__.__name__


class TranscriptFetcher:
    """
    Fetches transcript text over HTTP(S), optionally with Basic auth.

    A shared httpx.AsyncClient may be injected; otherwise a client is
    opened per request.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._client = client
        self._timeout = timeout if timeout is not None else settings.transcript_fetch_timeout

    async def fetch(
        self,
        url: Optional[str],
        username: Optional[str] = None,
        password: Optional[str] = None
    ) -> TranscriptFetchResult:
        """
        Fetch transcript content from a URL.

        Args:
            url: The transcript URL
            username: Optional Basic auth username
            password: Optional Basic auth password

        Returns:
            TranscriptFetchResult: content on success, a failure reason otherwise
        """
        if not url or not url.strip():
            return TranscriptFetchResult(success=False, error="No transcript URL provided")

        # Credentials are only sent when both halves are present
        auth = httpx.BasicAuth(username, password) if username and password else None
        headers = {"User-Agent": USER_AGENT}

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, auth=auth, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, headers=headers, auth=auth)
        except Exception as ex:
            reason = _network_error_reason(ex)
            logger.warning(f"Transcript fetch failed url={url} error={reason}")
            return TranscriptFetchResult(success=False, error=reason)

        if not response.is_success:
            return TranscriptFetchResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.reason_phrase}",
            )

        content = response.text
        if not content or not content.strip():
            return TranscriptFetchResult(success=False, error="Empty transcript content")

        return TranscriptFetchResult(success=True, content=content.strip())
