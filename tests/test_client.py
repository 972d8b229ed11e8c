"""
Tests for ReportClient request building and error mapping.
"""

import json
from datetime import datetime, timezone

import pytest
import requests

from fleet_reports.api.client import (
    CommandError,
    ReportClient,
    ReportRequestError,
    build_report_params,
)
from fleet_reports.config import config_from_dict

UTC = timezone.utc
FROM = datetime(2024, 3, 1, 19, 0, tzinfo=UTC)
TO = datetime(2024, 3, 2, 18, 59, 59, 999000, tzinfo=UTC)


def make_response(status_code=200, body=None, content=None, url='https://fleet.test/api/x'):
    response = requests.Response()
    response.status_code = status_code
    response.reason = 'OK' if status_code < 400 else 'Error'
    response.url = url
    response._content = content if content is not None else json.dumps(body).encode('utf-8')
    response._content_consumed = True
    return response


class FakeSession(requests.Session):
    """requests.Session that records calls and replays canned responses."""

    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_client(responses, **api):
    config = config_from_dict({'api': {'base_url': 'https://fleet.test/api/', **api}})
    session = FakeSession(responses)
    return ReportClient(config, session=session), session


def test_build_report_params_repeats_ids():
    params = build_report_params(FROM, TO, [1, 2], [9])

    assert params == [
        ('from', '2024-03-01T19:00:00.000Z'),
        ('to', '2024-03-02T18:59:59.999Z'),
        ('deviceId', 1),
        ('deviceId', 2),
        ('groupId', 9),
    ]


def test_get_report_request_shape():
    client, session = make_client([make_response(body=[{'deviceId': 1}])])

    data = client.get_report('reports/stops', FROM, TO, [1, 2], [9])

    assert data == [{'deviceId': 1}]
    method, url, kwargs = session.calls[0]
    assert method == 'GET'
    assert url == 'https://fleet.test/api/reports/stops'
    assert ('deviceId', 2) in kwargs['params']
    assert kwargs['headers'] == {'Accept': 'application/json'}
    assert kwargs['timeout'] == 30


def test_non_success_status_raises():
    client, _ = make_client([make_response(status_code=500, body={'message': 'fail'})])

    with pytest.raises(ReportRequestError) as exc_info:
        client.get_report('reports/trips', FROM, TO, [1])

    assert exc_info.value.status_code == 500
    assert exc_info.value.url == 'https://fleet.test/api/reports/trips'


def test_transport_error_raises():
    client, _ = make_client([requests.exceptions.ConnectionError("refused")])

    with pytest.raises(ReportRequestError) as exc_info:
        client.get_report('reports/stops', FROM, TO, [1])

    assert exc_info.value.status_code is None
    assert isinstance(exc_info.value.__cause__, requests.exceptions.ConnectionError)


def test_non_array_body_raises():
    client, _ = make_client([make_response(body={'not': 'a list'})])

    with pytest.raises(ReportRequestError):
        client.get_report('reports/stops', FROM, TO, [1])


def test_invalid_json_raises():
    client, _ = make_client([make_response(content=b'<html>')])

    with pytest.raises(ReportRequestError):
        client.get_report('reports/stops', FROM, TO, [1])


def test_bearer_token_header():
    client, session = make_client([], token='abc')

    assert session.headers['Authorization'] == 'Bearer abc'


def test_basic_auth_credentials():
    client, session = make_client([], username='admin', password='secret')

    assert session.auth == ('admin', 'secret')
    assert 'Authorization' not in session.headers


def test_get_route_single_device():
    client, session = make_client([make_response(body=[])])

    client.get_route(7, FROM, TO)

    _, url, kwargs = session.calls[0]
    assert url.endswith('/reports/route')
    assert [p for p in kwargs['params'] if p[0] == 'deviceId'] == [('deviceId', 7)]


def test_engine_stop_payload():
    client, session = make_client([make_response(body={'id': 1, 'type': 'engineStop'})])

    result = client.send_engine_command(12, ignition_on=True)

    method, url, kwargs = session.calls[0]
    assert method == 'POST'
    assert url == 'https://fleet.test/api/commands/send'
    assert kwargs['json'] == {'type': 'engineStop', 'attributes': {}, 'deviceId': 12}
    assert result['type'] == 'engineStop'


def test_engine_resume_queued_without_body():
    client, session = make_client([make_response(status_code=202, content=b'')])

    assert client.send_engine_command(12, ignition_on=False) == {}
    assert session.calls[0][2]['json']['type'] == 'engineResume'


def test_engine_command_rejected():
    client, _ = make_client([make_response(status_code=400, body={})])

    with pytest.raises(CommandError) as exc_info:
        client.send_engine_command(12, ignition_on=True)

    assert exc_info.value.status_code == 400


def test_download_export_writes_file(tmp_path):
    client, session = make_client([make_response(content=b'PK\x03\x04xlsx-bytes')])
    target = tmp_path / 'out' / 'stops.xlsx'

    path = client.download_export('reports/stops/xlsx', FROM, TO, [1], [], str(target))

    assert path == target
    assert target.read_bytes() == b'PK\x03\x04xlsx-bytes'
    assert session.calls[0][1].endswith('/reports/stops/xlsx')
    assert session.calls[0][2]['stream'] is True


class BrokenStream(requests.Response):
    """Response whose body drops after the first chunk."""

    def iter_content(self, chunk_size=1, decode_unicode=False):
        yield b'PK\x03\x04partial'
        raise requests.exceptions.ChunkedEncodingError("Connection broken")


def test_download_export_interrupted_removes_partial_file(tmp_path):
    response = BrokenStream()
    response.status_code = 200
    response.url = 'https://fleet.test/api/reports/stops/xlsx'
    response._content_consumed = True
    client, _ = make_client([response])
    target = tmp_path / 'stops.xlsx'

    with pytest.raises(ReportRequestError, match='interrupted'):
        client.download_export('reports/stops/xlsx', FROM, TO, [1], [], str(target))

    assert not target.exists()


@pytest.mark.parametrize('max_concurrency,pool_size', [(3, 3), (None, 10)])
def test_own_session_pool_sized_for_concurrent_buckets(max_concurrency, pool_size):
    config = config_from_dict({
        'api': {'base_url': 'https://fleet.test/api'},
        'reports': {'max_concurrency': max_concurrency},
    })

    client = ReportClient(config)

    adapter = client.session.get_adapter('https://fleet.test/api/reports/stops')
    assert adapter._pool_maxsize == pool_size
    assert client.session.get_adapter('http://fleet.test/api') is adapter
    client.close()
