"""Shared fixtures for httpstat tests."""

from __future__ import annotations

import pytest

METRICS_JSON = """{
    "time_namelookup": 0.001,
    "time_connect": 0.002,
    "time_appconnect": 0.030,
    "time_pretransfer": 0.050,
    "time_redirect": 0.000,
    "time_starttransfer": 0.080,
    "time_total": 0.100,
    "speed_download": 10240.0,
    "speed_upload": 0.0,
    "remote_ip": "93.184.216.34",
    "remote_port": "443",
    "local_ip": "10.0.0.2",
    "local_port": "51234"
}"""

HEADERS = (
    "HTTP/1.1 200 OK\r\n"
    "Content-Type: application/json\r\n"
    "Content-Length: 16"
)

BODY = '{"hello":"world"}\n'

@pytest.fixture
def metrics_json() -> str:
    return METRICS_JSON

@pytest.fixture
def curl_output() -> str:
    """Captured stdout of a successful curl run: headers, body, metrics."""
    return f"{HEADERS}\r\n\r\n{BODY}{METRICS_JSON}"
