"""HTTP fetching of sources pages with bounded retry on rate limiting.

Retries fire only for HTTP 429 and transient transport errors. Anything else
propagates on the first attempt.
"""

import httpx
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import CaptureError
from ..log import get_logger

logger = get_logger("fetch")


class RateLimitedError(Exception):
    pass


class FetchedPage(BaseModel):
    url: str
    html: str
    attempts: int
    rate_limited: bool = False


class Fetcher:
    def __init__(self, max_attempts: int = 3, wait_seconds: float = 2.0, timeout: float = 15.0):
        self.max_attempts = max(1, max_attempts)
        self.wait_seconds = wait_seconds
        self.timeout = timeout
        self.headers = {
            "User-Agent": "SourceDocs/1.0 (personal genealogy research tool)"
        }

    def _get(self, url: str) -> str:
        with httpx.Client(timeout=self.timeout, follow_redirects=True, headers=self.headers) as client:
            resp = client.get(url)
            if resp.status_code == 429:
                raise RateLimitedError(f"429 from {url}")
            resp.raise_for_status()
            return resp.text

    def fetch_page(self, url: str) -> FetchedPage:
        """
        Fetches a page. Raises CaptureError once retries are exhausted or on a
        non-retryable HTTP error.
        """
        rate_limited = False
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=30),
            retry=retry_if_exception_type((RateLimitedError, httpx.TransportError)),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(f"Retrying {url} (attempt {attempt.retry_state.attempt_number})")
                    try:
                        html = self._get(url)
                    except RateLimitedError:
                        rate_limited = True
                        raise
            attempts = attempt.retry_state.attempt_number
        except (RateLimitedError, httpx.HTTPError) as e:
            raise CaptureError(f"Could not fetch {url}: {e}") from e

        return FetchedPage(url=url, html=html, attempts=attempts, rate_limited=rate_limited)
