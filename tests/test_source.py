"""
Source Loader Tests

Share-link rewriting, local path detection, first-sheet parsing and the
single-redirect download rule.
"""
import io

import pytest
import requests

from portfolio_sync.common.exceptions import IngestionError, SourceFetchError
from portfolio_sync.common.http_client import HTTPClient
from portfolio_sync.datalayer.source import (
    SourceLoader, is_local_path, parse_first_sheet, rewrite_share_link,
)


class FakeResponse:
    def __init__(self, status_code=200, content=b'', headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}


class FakeSession:
    """Stands in for requests.Session, replaying canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


def xlsx_bytes(frame):
    buffer = io.BytesIO()
    frame.to_excel(buffer, index=False)
    return buffer.getvalue()


@pytest.fixture
def http_client(monkeypatch):
    def install(*responses):
        client = HTTPClient(total_retries=0)
        session = FakeSession(*responses)
        monkeypatch.setattr(client, 'session', session)
        return client, session
    return install


class TestShareLinks:
    """Cloud share links -> direct download URLs."""

    def test_sharepoint_link(self):
        url = 'https://contoso.sharepoint.com/:x:/g/personal/abc/EFile123?e=Xy12'
        assert rewrite_share_link(url) == (
            'https://contoso.sharepoint.com/_layouts/15/download.aspx?share=g/personal/abc/EFile123'
        )

    def test_onedrive_links(self):
        assert rewrite_share_link('https://onedrive.live.com/redir?resid=ABC&authkey=K') == \
            'https://onedrive.live.com/download?resid=ABC&authkey=K'
        assert rewrite_share_link('https://onedrive.live.com/view.aspx?resid=ABC?e=1') == \
            'https://onedrive.live.com/download.aspx?resid=ABC'

    def test_google_sheet_and_drive_links(self):
        assert rewrite_share_link('https://docs.google.com/spreadsheets/d/SHEET123/edit#gid=0') == \
            'https://docs.google.com/spreadsheets/d/SHEET123/export?format=xlsx'
        assert rewrite_share_link('https://drive.google.com/file/d/FILE9/view?usp=sharing') == \
            'https://drive.google.com/uc?export=download&id=FILE9'

    def test_dropbox_link(self):
        assert rewrite_share_link('https://www.dropbox.com/s/abc/portfolio.xlsx?dl=0') == \
            'https://www.dropbox.com/s/abc/portfolio.xlsx?dl=1'

    def test_other_urls_are_unchanged(self):
        url = 'https://files.example.com/portfolio.xlsx?token=1'
        assert rewrite_share_link(url) == url


class TestLocalPaths:

    @pytest.mark.parametrize('source', ['/data/portfolio.xlsx', './portfolio.xlsx', '../x.xlsx',
                                        'uploads/abc.xlsx', 'C:\\data\\portfolio.xlsx'])
    def test_local(self, source):
        assert is_local_path(source)

    @pytest.mark.parametrize('source', ['https://example.com/a.xlsx', 'http://example.com/a.xlsx',
                                        'not-a-file.xlsx'])
    def test_remote_or_unknown(self, source):
        assert not is_local_path(source)


class TestParseFirstSheet:
    """Structural validation of the parsed sheet."""

    def test_reads_first_sheet(self, workbook_path):
        frame = parse_first_sheet(workbook_path)
        assert len(frame) == 4
        assert 'LO ID' in frame.columns

    def test_reads_csv_by_extension(self):
        frame = parse_first_sheet(b'Client ID,Client Name\nC1,Ann\nC2,Ben\n', name='extract.csv')
        assert list(frame['Client ID']) == ['C1', 'C2']

    def test_blank_rows_are_dropped(self):
        frame = parse_first_sheet(b'Client ID,Client Name\nC1,Ann\n,\nC2,Ben\n', name='extract.csv')
        assert len(frame) == 2

    def test_blank_header_is_rejected(self):
        with pytest.raises(IngestionError, match='blank or missing column headers'):
            parse_first_sheet(b',Client Name\n1,Ann\n', name='extract.csv')

    def test_numeric_header_row_is_rejected(self, sample_frame):
        data = xlsx_bytes(sample_frame.iloc[:, :2].set_axis([1, 2], axis=1))
        with pytest.raises(IngestionError, match='invalid data format'):
            parse_first_sheet(data, name='numbers.xlsx')

    def test_header_without_data_rows_is_rejected(self):
        with pytest.raises(IngestionError, match='no data rows'):
            parse_first_sheet(b'Client ID,Client Name\n', name='extract.csv')

    def test_empty_file_is_rejected(self):
        with pytest.raises(IngestionError):
            parse_first_sheet(b'', name='extract.csv')

    def test_corrupt_workbook_is_rejected(self):
        with pytest.raises(IngestionError, match='Failed to read'):
            parse_first_sheet(b'not a zip archive', name='broken.xlsx')


class TestSourceLoader:
    """Local and remote loading."""

    def test_missing_source(self):
        with pytest.raises(IngestionError, match='No URL or file path provided'):
            SourceLoader().load('')

    def test_missing_local_file(self, tmp_path):
        with pytest.raises(IngestionError, match='Local file not found'):
            SourceLoader().load(str(tmp_path / 'absent.xlsx'))

    def test_local_workbook(self, workbook_path):
        assert len(SourceLoader().load(workbook_path)) == 4

    def test_download_follows_one_redirect(self, http_client, sample_frame):
        client, session = http_client(
            FakeResponse(302, headers={'Location': '/files/portfolio.xlsx'}),
            FakeResponse(200, content=xlsx_bytes(sample_frame)),
        )
        frame = SourceLoader(client).load('https://files.example.com/share/abc')

        assert len(frame) == 4
        assert session.calls == [
            'https://files.example.com/share/abc',
            'https://files.example.com/files/portfolio.xlsx',
        ]

    def test_second_redirect_fails(self, http_client):
        client, _ = http_client(
            FakeResponse(302, headers={'Location': 'https://a.example.com/1'}),
            FakeResponse(301, headers={'Location': 'https://b.example.com/2'}),
        )
        with pytest.raises(SourceFetchError, match='Too many redirects'):
            SourceLoader(client).load('https://files.example.com/share/abc')

    def test_redirect_without_location_fails(self, http_client):
        client, _ = http_client(FakeResponse(302))
        with pytest.raises(SourceFetchError, match='Location'):
            client.download('https://files.example.com/share/abc')

    def test_http_error_status(self, http_client):
        client, _ = http_client(FakeResponse(404))
        with pytest.raises(SourceFetchError) as excinfo:
            client.download('https://files.example.com/missing.xlsx')
        assert excinfo.value.status_code == 404

    def test_transport_error(self, http_client):
        client, _ = http_client(requests.exceptions.ConnectionError('refused'))
        with pytest.raises(SourceFetchError, match='Failed to download file'):
            client.download('https://files.example.com/portfolio.xlsx')

    def test_share_link_is_rewritten_before_download(self, http_client, sample_frame):
        client, session = http_client(FakeResponse(200, content=xlsx_bytes(sample_frame)))
        SourceLoader(client).load('https://www.dropbox.com/s/abc/portfolio.xlsx?dl=0')
        assert session.calls == ['https://www.dropbox.com/s/abc/portfolio.xlsx?dl=1']
