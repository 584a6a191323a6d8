"""Tests for timing payload extraction."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from httpstat.cli import (
    MetricsParseError,
    MissingPayloadError,
    RawMetrics,
    extract_body,
    extract_metrics,
    locate_metrics_payload,
    split_response,
)


class TestLocateMetricsPayload:
    """Tests for the trailing brace slice."""

    def test_slices_last_brace_pair(self, curl_output, metrics_json):
        assert locate_metrics_payload(curl_output) == metrics_json

    def test_missing_open_brace(self):
        assert locate_metrics_payload("HTTP/1.1 200 OK\r\n\r\nno metrics }") is None

    def test_missing_close_brace(self):
        assert locate_metrics_payload("HTTP/1.1 200 OK\r\n\r\n{ truncated") is None

    def test_empty_text(self):
        assert locate_metrics_payload("") is None


class TestExtractMetrics:
    """Tests for parsing the timing record."""

    def test_parses_all_fields(self, curl_output):
        metrics = extract_metrics(curl_output)

        assert metrics.time_namelookup == pytest.approx(0.001)
        assert metrics.time_connect == pytest.approx(0.002)
        assert metrics.time_appconnect == pytest.approx(0.030)
        assert metrics.time_total == pytest.approx(0.100)
        assert metrics.speed_download == pytest.approx(10240.0)
        assert metrics.remote_ip == "93.184.216.34"
        assert metrics.remote_port == "443"
        assert metrics.local_port == "51234"

    def test_converts_to_milliseconds(self, curl_output):
        timings = extract_metrics(curl_output).to_milliseconds()

        assert timings.namelookup == pytest.approx(1.0)
        assert timings.connect == pytest.approx(2.0)
        assert timings.appconnect == pytest.approx(30.0)
        assert timings.pretransfer == pytest.approx(50.0)
        assert timings.starttransfer == pytest.approx(80.0)
        assert timings.total == pytest.approx(100.0)

    def test_missing_appconnect_defaults_to_zero(self):
        text = '{"time_namelookup": 0.001, "time_connect": 0.002, "time_total": 0.1}'

        metrics = extract_metrics(text)

        assert metrics.time_appconnect == 0.0
        assert metrics.time_total == pytest.approx(0.1)

    def test_non_numeric_fields_default_to_zero(self):
        text = '{"time_namelookup": "fast", "time_connect": null, "time_total": true}'

        metrics = extract_metrics(text)

        assert metrics.time_namelookup == 0.0
        assert metrics.time_connect == 0.0
        assert metrics.time_total == 0.0

    def test_numeric_endpoint_fields_become_text(self):
        metrics = extract_metrics('{"remote_port": 8080}')
        assert metrics.remote_port == "8080"

    def test_no_braces_raises_missing_payload(self):
        with pytest.raises(MissingPayloadError):
            extract_metrics("HTTP/1.1 200 OK\r\n\r\nplain body")

    def test_malformed_json_raises_parse_error(self):
        with pytest.raises(MetricsParseError) as exc_info:
            extract_metrics('body {"time_total": 0.1,, }')
        assert str(exc_info.value) == "Failed to parse timing metrics."

    def test_reversed_braces_raise_parse_error(self):
        with pytest.raises(MetricsParseError):
            extract_metrics("} stray {")

    def test_unbalanced_braces_raise_parse_error(self):
        with pytest.raises(MetricsParseError):
            extract_metrics('{"a": 1}}')

    def test_reparsing_payload_is_idempotent(self, curl_output):
        first = extract_metrics(curl_output)
        second = extract_metrics(locate_metrics_payload(curl_output))

        assert first == second

    def test_metrics_are_immutable(self, curl_output):
        metrics = extract_metrics(curl_output)
        with pytest.raises(ValidationError):
            metrics.time_total = 1.0

    def test_empty_record_is_all_defaults(self):
        assert extract_metrics("{}") == RawMetrics()


class TestSplitResponse:
    """Tests for separating headers from the rest of the output."""

    def test_splits_on_first_blank_line(self, curl_output):
        headers, rest = split_response(curl_output)

        assert headers.startswith("HTTP/1.1 200 OK")
        assert headers.endswith("Content-Length: 16")
        assert rest.startswith('{"hello"')

    def test_missing_separator_returns_no_headers(self):
        headers, rest = split_response("no separator here {}")

        assert headers is None
        assert rest == "no separator here {}"

    def test_extract_body_drops_headers_and_metrics(self, curl_output):
        assert extract_body(curl_output) == '{"hello":"world"}\n'

    def test_extract_body_without_metrics(self):
        assert extract_body("HTTP/1.1 200 OK\r\n\r\nplain") == "plain"
