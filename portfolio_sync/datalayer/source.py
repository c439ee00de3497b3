"""
Source loader: resolves a local path or URL to the first sheet of a workbook.

Cloud share links are rewritten to their direct-download form before
fetching. Structural problems (no sheet, no usable header row, no data rows)
raise IngestionError and abort the run.
"""

import io
import logging
import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import pandas as pd

from ..common.exceptions import IngestionError
from ..common.http_client import HTTPClient


logger = logging.getLogger(__name__)

CSV_SUFFIXES = ('.csv', '.txt')

_AUTO_HEADER = re.compile(r'^(Column\d+|Unnamed: \d+.*|__EMPTY.*)$', re.IGNORECASE)
_GOOGLE_FILE = re.compile(r'/file/d/([^/]+)')
_GOOGLE_SHEET = re.compile(r'/spreadsheets/d/([^/]+)')


# ============================================================================
# Share-link rewriting
# ============================================================================

def _strip_expiry(url: str) -> str:
    return url.split('?e=')[0] if '?e=' in url else url


def rewrite_share_link(url: str) -> str:
    """
    Convert a cloud share link into a direct-download URL.

    Handles SharePoint (':x:' links), OneDrive, Google Drive/Sheets and
    Dropbox; any other URL is returned unchanged.

    Args:
        url: Link as pasted by a user

    Returns:
        str: URL that serves the file bytes
    """
    if 'sharepoint.com' in url and ':x:' in url:
        url = _strip_expiry(url)
        if '/_layouts/15/guestaccess.aspx' in url:
            return url
        if '/:x:/' in url:
            base_url, file_path = url.split('/:x:/', 1)
            file_path = file_path.split('?')[0]
            return f"{base_url}/_layouts/15/download.aspx?share={file_path}"

    if 'onedrive.live.com' in url:
        url = _strip_expiry(url)
        if '/redir?' in url:
            return url.replace('/redir?', '/download?')
        if '/view.aspx' in url:
            return url.replace('/view.aspx', '/download.aspx')
        return url

    if 'docs.google.com' in url:
        sheet = _GOOGLE_SHEET.search(url)
        if sheet:
            return f"https://docs.google.com/spreadsheets/d/{sheet.group(1)}/export?format=xlsx"

    if 'drive.google.com' in url:
        file_match = _GOOGLE_FILE.search(url)
        if file_match:
            return f"https://drive.google.com/uc?export=download&id={file_match.group(1)}"

    if 'dropbox.com' in url:
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        query['dl'] = ['1']
        return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))

    return url


def is_local_path(source: str) -> bool:
    """True when the source refers to the filesystem rather than a URL."""
    if source.startswith(('http://', 'https://')):
        return False
    return (
        source.startswith(('/', './', '../', 'uploads/'))
        or (len(source) > 3 and source[1] == ':')
        or os.path.exists(source)
    )


# ============================================================================
# Workbook parsing
# ============================================================================

def validate_headers(frame: pd.DataFrame) -> None:
    """
    Reject sheets without a descriptive header row.

    Raises:
        IngestionError: When headers are missing, blank, auto-generated, or
            all numeric (the first row held data)
    """
    columns = list(frame.columns)
    if not columns:
        raise IngestionError(
            'Excel file has invalid data format. Please ensure the first row contains column headers.'
        )

    for column in columns:
        text = '' if column is None else str(column).strip()
        if not text or _AUTO_HEADER.match(text):
            raise IngestionError(
                'Excel file has blank or missing column headers. Please ensure the first row contains '
                'descriptive column names (e.g., Client ID, Client Name, Outstanding, etc.).'
            )

    if all(isinstance(c, (int, float)) for c in columns):
        raise IngestionError(
            'Excel file has invalid data format. Please ensure the first row contains column headers.'
        )


def parse_first_sheet(data: Union[bytes, str, Path], name: str = '') -> pd.DataFrame:
    """
    Parse the first sheet of a workbook (or a CSV file by extension).

    Args:
        data: File bytes or a filesystem path
        name: File name used to pick the CSV reader and in messages

    Returns:
        pd.DataFrame: Data rows with header-derived column names

    Raises:
        IngestionError: On unreadable files, missing sheets, bad headers or
            zero data rows
    """
    source = io.BytesIO(data) if isinstance(data, bytes) else data
    label = name or str(data if not isinstance(data, bytes) else 'download')

    try:
        if str(label).lower().endswith(CSV_SUFFIXES):
            frame = pd.read_csv(source, dtype=object)
        else:
            with pd.ExcelFile(source) as workbook:
                if not workbook.sheet_names:
                    raise IngestionError('Excel file contains no sheets. Please upload a valid Excel file.')
                frame = workbook.parse(workbook.sheet_names[0], dtype=object)
    except IngestionError:
        raise
    except pd.errors.EmptyDataError as e:
        raise IngestionError('Excel sheet is empty or corrupted. Please upload a valid Excel file.') from e
    except Exception as e:
        raise IngestionError(f"Failed to read Excel file {label}: {e}") from e

    validate_headers(frame)

    frame = frame.dropna(how='all').reset_index(drop=True)
    if frame.empty:
        raise IngestionError('Excel file contains no data rows. Please upload a file with client data.')

    return frame


class SourceLoader:
    """
    Loads the client extract from a local path or an http(s) URL.
    """

    def __init__(self, http_client: Optional[HTTPClient] = None, max_redirects: int = 1):
        """
        Args:
            http_client: Client used for remote sources (created on demand)
            max_redirects: Redirect hops allowed for remote sources
        """
        self._http_client = http_client
        self.max_redirects = max_redirects

    @property
    def http_client(self) -> HTTPClient:
        if self._http_client is None:
            self._http_client = HTTPClient()
        return self._http_client

    def load(self, source: str) -> pd.DataFrame:
        """
        Fetch and parse a source.

        Args:
            source: Local path or URL

        Returns:
            pd.DataFrame: First sheet

        Raises:
            IngestionError: When no source is given or it cannot be read
        """
        if not source:
            raise IngestionError('No URL or file path provided')

        if is_local_path(source):
            if not os.path.exists(source):
                raise IngestionError(f"Local file not found: {source}")
            logger.info(f"Loading local workbook {source}")
            return parse_first_sheet(source, name=source)

        download_url = rewrite_share_link(source)
        if download_url != source:
            logger.info(f"Rewrote share link to {download_url}")

        content = self.http_client.download(download_url, max_redirects=self.max_redirects)
        logger.info(f"Downloaded {len(content)} bytes from {download_url}")
        return parse_first_sheet(content, name=urlparse(download_url).path)
