"""
HTTP client for downloading source workbooks with connection pooling and
retry logic.
"""

import logging
from typing import Any, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import SourceFetchError


logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

DEFAULT_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
}


class HTTPClient:
    """
    Pooled requests session for fetching portfolio workbooks.

    Transient failures (429 and 5xx) are retried by urllib3 with exponential
    backoff. Redirects are never followed implicitly; download() follows a
    bounded number of them itself.
    """

    def __init__(
        self,
        pool_connections: int = 10,
        pool_maxsize: int = 20,
        total_retries: int = 3,
        backoff_factor: float = 1.0,
        status_forcelist: Optional[List[int]] = None,
        default_timeout: int = 60
    ):
        self.default_timeout = default_timeout
        retries = Retry(
            total=total_retries,
            backoff_factor=backoff_factor,
            status_forcelist=status_forcelist or [429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
            redirect=0,
            raise_on_redirect=False,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries, pool_connections=pool_connections,
                              pool_maxsize=pool_maxsize, pool_block=True)

        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        for scheme in ("https://", "http://"):
            self.session.mount(scheme, adapter)
        logger.debug(f"Workbook HTTP client ready ({total_retries} retries, {default_timeout}s timeout)")

    def get(self, url: str, timeout: Optional[int] = None, **kwargs: Any) -> requests.Response:
        """
        Single GET; 3xx responses are returned as-is.

        Raises:
            requests.exceptions.RequestException: On transport failure
        """
        timeout = timeout or self.default_timeout
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=False, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"GET {url} failed: {e}")
            raise
        logger.debug(f"GET {url} -> {response.status_code} ({len(response.content)} bytes)")
        return response

    def download(self, url: str, max_redirects: int = 1) -> bytes:
        """
        Download a file body, following at most max_redirects redirects.

        Args:
            url: File URL
            max_redirects: Redirect hops allowed before giving up

        Returns:
            bytes: Response body

        Raises:
            SourceFetchError: On transport errors, non-200 responses or
                too many redirects
        """
        current_url = url
        for hop in range(max_redirects + 1):
            try:
                response = self.get(current_url)
            except requests.exceptions.RequestException as e:
                raise SourceFetchError(f"Failed to download file: {e}") from e

            if response.status_code in REDIRECT_STATUSES:
                location = response.headers.get('Location')
                if not location:
                    raise SourceFetchError(
                        f"Redirect without Location header (HTTP {response.status_code})",
                        status_code=response.status_code
                    )
                if hop >= max_redirects:
                    raise SourceFetchError(
                        f"Too many redirects while downloading {url}",
                        status_code=response.status_code
                    )
                current_url = urljoin(current_url, location)
                logger.info(f"Following redirect to {current_url}")
                continue

            if response.status_code != 200:
                raise SourceFetchError(
                    f"Failed to download file: HTTP {response.status_code}",
                    status_code=response.status_code
                )
            return response.content

        raise SourceFetchError(f"Too many redirects while downloading {url}")

    def close(self):
        """Close the HTTP session and release connections"""
        if self.session:
            self.session.close()
            logger.info("HTTP client session closed")
