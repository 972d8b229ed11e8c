"""
Configuration for Fleet Reports.

Settings live in a YAML file (config.yaml by default):

    api:
      base_url: https://fleet.example.com/api
      token: ""
      username: ""
      password: ""
      timeout: 30
    reports:
      local_day_offset_hours: 5
      max_concurrency: 8
    logging:
      level: INFO

Report pages split requested ranges on calendar days of one fixed UTC offset.
That offset is configured in exactly one place: reports.local_day_offset_hours.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


# Asia/Karachi (UTC+5), the audience the dashboard was first deployed for
DEFAULT_LOCAL_DAY_OFFSET_HOURS = 5
DEFAULT_LOCAL_DAY_OFFSET = timedelta(hours=DEFAULT_LOCAL_DAY_OFFSET_HOURS)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_TIMEOUT = 30

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ConfigError(Exception):
    """Raised when the configuration file is missing or incomplete."""
    pass


@dataclass
class ApiConfig:
    """Report backend connection settings."""
    base_url: str
    token: str = ''
    username: str = ''
    password: str = ''
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class ReportsConfig:
    """Settings for bucketed report fetching."""
    local_day_offset_hours: float = DEFAULT_LOCAL_DAY_OFFSET_HOURS
    max_concurrency: Optional[int] = DEFAULT_MAX_CONCURRENCY


@dataclass
class Config:
    api: ApiConfig
    reports: ReportsConfig = field(default_factory=ReportsConfig)
    log_level: str = 'INFO'

    @property
    def local_day_offset(self) -> timedelta:
        """Fixed UTC offset whose calendar days bound report buckets."""
        return timedelta(hours=self.reports.local_day_offset_hours)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def config_from_dict(data: Dict[str, Any]) -> Config:
    """
    Build Config from a parsed YAML mapping, filling defaults.

    Args:
        data: Mapping as returned by yaml.safe_load

    Returns:
        Config instance

    Raises:
        ConfigError: if api.base_url is missing or a value has the wrong type
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    api_data = _section(data, 'api')
    base_url = api_data.get('base_url', '')
    if not base_url:
        raise ConfigError("API base URL not configured. Add 'api.base_url' to config.yaml")

    api = ApiConfig(
        base_url=str(base_url).rstrip('/'),
        token=api_data.get('token') or '',
        username=api_data.get('username') or '',
        password=api_data.get('password') or '',
        timeout=float(api_data.get('timeout', DEFAULT_TIMEOUT)),
    )

    reports_data = _section(data, 'reports')
    max_concurrency = reports_data.get('max_concurrency', DEFAULT_MAX_CONCURRENCY)
    if max_concurrency is not None:
        try:
            max_concurrency = int(max_concurrency)
        except (TypeError, ValueError):
            raise ConfigError("'reports.max_concurrency' must be an integer")
        if max_concurrency < 1:
            raise ConfigError("'reports.max_concurrency' must be at least 1")

    try:
        offset_hours = float(reports_data.get('local_day_offset_hours', DEFAULT_LOCAL_DAY_OFFSET_HOURS))
    except (TypeError, ValueError):
        raise ConfigError("'reports.local_day_offset_hours' must be a number")
    if not -24 < offset_hours < 24:
        raise ConfigError("'reports.local_day_offset_hours' must be between -24 and 24")

    reports = ReportsConfig(
        local_day_offset_hours=offset_hours,
        max_concurrency=max_concurrency,
    )

    log_level = str(_section(data, 'logging').get('level', 'INFO')).upper()

    return Config(api=api, reports=reports, log_level=log_level)


def load_config(config_path: str = "config.yaml") -> Config:
    """Load YAML configuration file."""
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return config_from_dict(data or {})


def setup_logging(level: str = 'INFO') -> None:
    """Configure the root handler used by all fleet_reports loggers."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
