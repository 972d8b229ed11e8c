"""
API Client for the fleet report backend.

Provides methods to fetch report sections, trip routes, XLSX exports
and to send remote engine commands.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.adapters import DEFAULT_POOLSIZE, HTTPAdapter

from fleet_reports.config import Config
from fleet_reports.reports.buckets import format_instant


class ReportRequestError(Exception):
    """Raised when the backend returns a non-success status or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class CommandError(ReportRequestError):
    """Raised when a device command is rejected by the backend."""
    pass


ENGINE_STOP = 'engineStop'
ENGINE_RESUME = 'engineResume'


def build_report_params(
    from_dt: datetime,
    to_dt: datetime,
    device_ids: Iterable[int] = (),
    group_ids: Iterable[int] = (),
) -> List[tuple]:
    """
    Build query parameters for a report request.

    deviceId and groupId are repeated once per id, so the result is a list
    of pairs rather than a dict.
    """
    params = [('from', format_instant(from_dt)), ('to', format_instant(to_dt))]
    params.extend(('deviceId', device_id) for device_id in device_ids)
    params.extend(('groupId', group_id) for group_id in group_ids)
    return params


class ReportClient:
    """
    Client for the fleet report API.

    Endpoints:
    - reports/stops, reports/trips: report sections for a range
    - reports/route: positions of one device for a range
    - reports/{type}/xlsx: spreadsheet export
    - commands/send: remote device commands
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        """Initialize client with loaded configuration."""
        self.config = config
        self.logger = logging.getLogger('api.client')

        api_config = config.api
        self.base_url = api_config.base_url
        self.timeout = api_config.timeout

        # Bucket fetches share this session from worker threads. Headers and
        # auth are only set here; after that the session is read-only and each
        # thread checks out its own connection from the adapter pool.
        if session is None:
            session = requests.Session()
            pool_size = config.reports.max_concurrency or DEFAULT_POOLSIZE
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_size)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.session = session
        if api_config.token:
            self.session.headers['Authorization'] = f"Bearer {api_config.token}"
        elif api_config.username:
            self.session.auth = (api_config.username, api_config.password)

        self.logger.debug(f"ReportClient initialized for {self.base_url}")

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send request and check status.

        Raises:
            ReportRequestError: on transport failure or non-2xx status
        """
        url = self._url(path)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ReportRequestError(f"Request timeout: {method} {url}", url=url) from e
        except requests.exceptions.RequestException as e:
            raise ReportRequestError(f"Request error: {method} {url}: {e}", url=url) from e

        if not response.ok:
            raise ReportRequestError(
                f"{method} {url} failed: {response.status_code} {response.reason}",
                status_code=response.status_code,
                url=url,
            )
        return response

    def _get_json_list(self, path: str, params: List[tuple]) -> List[Dict[str, Any]]:
        response = self._request('GET', path, params=params, headers={'Accept': 'application/json'})
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ReportRequestError(f"Invalid JSON response from {path}: {e}", url=response.url) from e

        if not isinstance(data, list):
            raise ReportRequestError(
                f"Expected JSON array from {path}, got {type(data).__name__}",
                url=response.url,
            )
        return data

    def get_report(
        self,
        path: str,
        from_dt: datetime,
        to_dt: datetime,
        device_ids: Iterable[int] = (),
        group_ids: Iterable[int] = (),
    ) -> List[Dict[str, Any]]:
        """
        Fetch one report section.

        Args:
            path: Report path, e.g. "reports/stops"
            from_dt: Section start (instant)
            to_dt: Section end (instant)
            device_ids: Devices to include
            group_ids: Device groups to include

        Returns:
            List of raw report records
        """
        params = build_report_params(from_dt, to_dt, device_ids, group_ids)
        self.logger.debug(f"GET {path}: {format_instant(from_dt)} - {format_instant(to_dt)}")

        data = self._get_json_list(path, params)

        self.logger.debug(f"Fetched {len(data)} records from {path}")
        return data

    def get_route(self, device_id: int, from_dt: datetime, to_dt: datetime) -> List[Dict[str, Any]]:
        """Fetch positions of one device for a range (single request, not split)."""
        params = build_report_params(from_dt, to_dt, [device_id])
        self.logger.info(f"Fetching route for device {device_id}: {format_instant(from_dt)} - {format_instant(to_dt)}")
        return self._get_json_list('reports/route', params)

    def download_export(
        self,
        path: str,
        from_dt: datetime,
        to_dt: datetime,
        device_ids: Iterable[int],
        group_ids: Iterable[int],
        target: str,
    ) -> Path:
        """
        Download the XLSX export for the whole range.

        Args:
            path: Export path, e.g. "reports/stops/xlsx"
            target: File to write

        Returns:
            Path of the written file

        Raises:
            ReportRequestError: on a failed request or an interrupted stream;
                a partly written file is removed
        """
        params = build_report_params(from_dt, to_dt, device_ids, group_ids)
        self.logger.info(f"Downloading export {path}: {format_instant(from_dt)} - {format_instant(to_dt)}")

        response = self._request('GET', path, params=params, stream=True)

        out_path = Path(target)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(out_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        f.write(chunk)
        except requests.exceptions.RequestException as e:
            out_path.unlink(missing_ok=True)
            raise ReportRequestError(f"Export download interrupted: {path}: {e}", url=response.url) from e
        except OSError:
            out_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        self.logger.info(f"Saved: {out_path}")
        return out_path

    def send_engine_command(self, device_id: int, ignition_on: bool) -> Dict[str, Any]:
        """
        Send engine stop (ignition on) or engine resume (ignition off).

        Returns:
            Command as echoed by the backend

        Raises:
            CommandError: if the backend rejects the command
        """
        command_type = ENGINE_STOP if ignition_on else ENGINE_RESUME
        payload = {
            'type': command_type,
            'attributes': {},
            'deviceId': device_id,
        }
        self.logger.info(f"Sending {command_type} to device {device_id}")

        try:
            response = self._request('POST', 'commands/send', json=payload)
        except ReportRequestError as e:
            raise CommandError(f"Command failed: {e}", status_code=e.status_code, url=e.url) from e

        # 202 Accepted (command queued for offline device) carries no body
        if not response.content:
            return {}
        return response.json()

    def close(self) -> None:
        self.session.close()
