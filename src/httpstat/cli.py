#!/usr/bin/env python3
"""httpstat CLI.

Visualize where the time of a single curl request is spent.
"""

from __future__ import annotations

__version__ = "0.1.0"

import logging
import re
import subprocess
from enum import Enum
from typing import Any

import typer
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)
console = Console()


# Curl flags that would clash with the fixed -w/-D/-o/-s invocation.
DISALLOWED_CURL_OPTIONS = (
    "-w",
    "--write-out",
    "-D",
    "--dump-header",
    "-o",
    "--output",
    "-s",
    "--silent",
)

CURL_WRITE_OUT_FORMAT = """{
    "time_namelookup": %{time_namelookup},
    "time_connect": %{time_connect},
    "time_appconnect": %{time_appconnect},
    "time_pretransfer": %{time_pretransfer},
    "time_redirect": %{time_redirect},
    "time_starttransfer": %{time_starttransfer},
    "time_total": %{time_total},
    "speed_download": %{speed_download},
    "speed_upload": %{speed_upload},
    "remote_ip": "%{remote_ip}",
    "remote_port": "%{remote_port}",
    "local_ip": "%{local_ip}",
    "local_port": "%{local_port}"
}"""

HEADER_BODY_SEPARATOR = "\r\n\r\n"
BODY_PREVIEW_LIMIT = 1024


# =============================================================================
# Enums
# =============================================================================


class Color(str, Enum):
    """ANSI color escape sequences."""

    RESET = "\x1b[0m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"

    def wrap(self, text: str) -> str:
        """Return text colored with this color, followed by a reset."""
        return f"{self.value}{text}{Color.RESET.value}"


# =============================================================================
# Errors
# =============================================================================


class HttpstatError(Exception):
    """Base class for httpstat failures."""


class MissingPayloadError(HttpstatError):
    """The curl output holds no `{...}` timing payload."""

    def __init__(self) -> None:
        super().__init__("Timing metrics not found in curl output.")


class MetricsParseError(HttpstatError):
    """The timing payload is not a well-formed JSON object."""

    def __init__(self, payload: str) -> None:
        super().__init__("Failed to parse timing metrics.")
        self.payload = payload


class TransferError(HttpstatError):
    """Curl exited with a non-zero status or could not be started."""

    def __init__(self, returncode: int, stderr: str) -> None:
        super().__init__(stderr)
        self.returncode = returncode if returncode > 0 else 1
        self.stderr = stderr


# =============================================================================
# Models
# =============================================================================

_TIME_FIELDS = (
    "time_namelookup",
    "time_connect",
    "time_appconnect",
    "time_pretransfer",
    "time_redirect",
    "time_starttransfer",
    "time_total",
)
_SPEED_FIELDS = ("speed_download", "speed_upload")
_ENDPOINT_FIELDS = ("remote_ip", "remote_port", "local_ip", "local_port")


class CumulativeTimings(BaseModel):
    """Milliseconds elapsed from request start until each transfer milestone."""

    model_config = ConfigDict(frozen=True)

    namelookup: float = 0.0
    connect: float = 0.0
    appconnect: float = 0.0
    pretransfer: float = 0.0
    starttransfer: float = 0.0
    total: float = 0.0


class RawMetrics(BaseModel):
    """Curl write-out values (times in seconds, speeds in bytes per second)."""

    model_config = ConfigDict(frozen=True)

    time_namelookup: float = 0.0
    time_connect: float = 0.0
    time_appconnect: float = 0.0
    time_pretransfer: float = 0.0
    time_redirect: float = 0.0
    time_starttransfer: float = 0.0
    time_total: float = 0.0
    speed_download: float = 0.0
    speed_upload: float = 0.0
    remote_ip: str = ""
    remote_port: str = ""
    local_ip: str = ""
    local_port: str = ""

    @field_validator(*_TIME_FIELDS, *_SPEED_FIELDS, mode="before")
    @classmethod
    def _number_or_zero(cls, value: Any) -> float:
        # Anything that is not a JSON number reads as 0.0
        if isinstance(value, bool) or not isinstance(value, int | float):
            return 0.0
        return float(value)

    @field_validator(*_ENDPOINT_FIELDS, mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    def to_milliseconds(self) -> CumulativeTimings:
        """Convert the cumulative second counters to milliseconds."""
        return CumulativeTimings(
            namelookup=self.time_namelookup * 1000,
            connect=self.time_connect * 1000,
            appconnect=self.time_appconnect * 1000,
            pretransfer=self.time_pretransfer * 1000,
            starttransfer=self.time_starttransfer * 1000,
            total=self.time_total * 1000,
        )


class PhaseDurations(BaseModel):
    """Per-phase durations in milliseconds."""

    model_config = ConfigDict(frozen=True)

    dns: float
    tcp: float
    tls: float
    server: float
    transfer: float

    @classmethod
    def from_cumulative(cls, timings: CumulativeTimings) -> PhaseDurations:
        """Turn cumulative milestones into consecutive intervals.

        ``appconnect`` is not used: the TLS phase is measured from connect to
        pretransfer, so it also covers any protocol negotiation curl performs
        after the handshake. Non-monotonic input yields negative phases.
        """
        return cls(
            dns=timings.namelookup,
            tcp=timings.connect - timings.namelookup,
            tls=timings.pretransfer - timings.connect,
            server=timings.starttransfer - timings.pretransfer,
            transfer=timings.total - timings.starttransfer,
        )

    def as_tuple(self) -> tuple[float, float, float, float, float]:
        return (self.dns, self.tcp, self.tls, self.server, self.transfer)


class DisplayOptions(BaseModel):
    """Optional sections printed around the headers and the diagram."""

    show_ip: bool = True
    show_body: bool = False
    show_speed: bool = False


# =============================================================================
# Metrics Extraction
# =============================================================================


def locate_metrics_payload(text: str) -> str | None:
    """Return the slice from the last ``{`` through the last ``}``.

    Curl appends the write-out record after the body, so the trailing brace
    pair delimits it. This is a positional slice, not a structural parse.
    Returns None when either brace is absent.
    """
    start = text.rfind("{")
    end = text.rfind("}")
    if start == -1 or end == -1:
        return None
    return text[start : end + 1]


def extract_metrics(text: str) -> RawMetrics:
    """Parse the trailing timing record out of captured curl output."""
    payload = locate_metrics_payload(text)
    if payload is None:
        raise MissingPayloadError()

    try:
        metrics = RawMetrics.model_validate_json(payload)
    except ValidationError as exc:
        logger.debug(f"Invalid timing payload {payload!r}: {exc}")
        raise MetricsParseError(payload) from exc

    logger.debug(f"Parsed timing metrics: {metrics.model_dump()}")
    return metrics


# =============================================================================
# Response Splitting
# =============================================================================


def split_response(text: str) -> tuple[str | None, str]:
    """Split curl output into header text and everything after it.

    Headers are None when the output has no blank-line separator.
    """
    headers, separator, rest = text.partition(HEADER_BODY_SEPARATOR)
    if not separator:
        return None, text
    return headers, rest


def extract_body(text: str) -> str:
    """Return the response body, without headers and timing record."""
    _, rest = split_response(text)
    start = rest.rfind("{")
    if start != -1 and rest.rfind("}") > start:
        return rest[:start]
    return rest


# =============================================================================
# Header Colorizing
# =============================================================================

STATUS_LINE_PATTERN = re.compile(r"(.+?)/(.*)")
HEADER_LINE_PATTERN = re.compile(r"(.+?):(.*)")


def _colorize_status_line(line: str) -> str:
    return STATUS_LINE_PATTERN.sub(
        lambda m: f"{Color.GREEN.wrap(m.group(1))}/{Color.CYAN.wrap(m.group(2))}",
        line,
        count=1,
    )


def _colorize_header_line(line: str) -> str:
    return HEADER_LINE_PATTERN.sub(
        lambda m: f"{m.group(1)}:{Color.CYAN.wrap(m.group(2))}",
        line,
        count=1,
    )


def colorize_headers(header_text: str) -> str:
    """Color the status line and header values of a response header block.

    An empty line is emitted before the status line. Lines that match
    neither pattern are passed through unchanged.
    """
    buffer: list[str] = []
    for index, line in enumerate(header_text.splitlines()):
        if index == 0:
            buffer.append("")
            buffer.append(_colorize_status_line(line))
        else:
            buffer.append(_colorize_header_line(line))
    return "\n".join(buffer)


# =============================================================================
# Timing Rendering
# =============================================================================

PHASE_TITLES = (
    "DNS Lookup",
    "TCP Connection",
    "SSL Handshake",
    "Server Processing",
    "Content Transfer",
)
MILESTONE_LABELS = ("namelookup", "connect", "pretransfer", "starttransfer", "total")

VALUE_WIDTH = 7
TITLE_GAP = 3
LABEL_OFFSET = 5
# total hangs just past the closing bracket
TOTAL_LABEL_OFFSET = 2
DIAGRAM_MARGIN = " " * 12


def _phase_boundaries() -> list[int]:
    """Columns of the ``|`` closing each phase (``]`` for the last one)."""
    boundaries: list[int] = []
    column = 0
    for title in PHASE_TITLES:
        column += len(title)
        boundaries.append(column)
        column += TITLE_GAP
    return boundaries


def _format_ms(value: float) -> str:
    return f"{value:.0f}ms"


def _bracket_text(value: float) -> str:
    return f"{_format_ms(value):^{VALUE_WIDTH}}"


def _label_text(value: float) -> str:
    return f"{_format_ms(value):<{VALUE_WIDTH}}"


def format_bracket_value(value: float) -> str:
    """Centered, colored duration used inside the bracket row."""
    return Color.CYAN.wrap(_bracket_text(value))


def format_label_value(value: float) -> str:
    """Left-justified, colored duration used after a milestone label."""
    return Color.CYAN.wrap(_label_text(value))


def _place(cells: list[tuple[int, str, str]]) -> str:
    """Lay out ``(column, visible, rendered)`` cells on one diagram row.

    Columns are measured on visible text, so escape codes in ``rendered``
    never shift the alignment.
    """
    parts: list[str] = []
    cursor = 0
    for column, visible, rendered in cells:
        parts.append(" " * max(column - cursor, 0))
        parts.append(rendered)
        cursor = max(column, cursor) + len(visible)
    return DIAGRAM_MARGIN + "".join(parts)


def _title_row() -> str:
    cells: list[tuple[int, str, str]] = []
    column = 0
    for title in PHASE_TITLES:
        cells.append((column, title, title))
        column += len(title) + TITLE_GAP
    return _place(cells)


def _bracket_row(phases: PhaseDurations, boundaries: list[int]) -> str:
    cells: list[tuple[int, str, str]] = [(0, "[", "[")]
    left = 0
    for index, (value, boundary) in enumerate(zip(phases.as_tuple(), boundaries, strict=True)):
        visible = _bracket_text(value)
        spare = boundary - left - 1 - len(visible)
        cells.append((left + 1 + (spare + 1) // 2, visible, format_bracket_value(value)))
        closer = "]" if index == len(boundaries) - 1 else "|"
        cells.append((boundary, closer, closer))
        left = boundary
    return _place(cells)


def _separator_row(boundaries: list[int]) -> str:
    return _place([(boundary, "|", "|") for boundary in boundaries])


def _milestone_row(index: int, label: str, value: float, boundaries: list[int]) -> str:
    offset = TOTAL_LABEL_OFFSET if index == len(boundaries) - 1 else LABEL_OFFSET
    value_column = boundaries[index] + offset
    label_text = f"{label}:"
    cells: list[tuple[int, str, str]] = [
        (value_column - len(label_text), label_text, label_text),
        (value_column, _label_text(value), format_label_value(value)),
    ]
    cells.extend((boundary, "|", "|") for boundary in boundaries[index + 1 :])
    return _place(cells)


def render_timing_diagram(timings: CumulativeTimings) -> str:
    """Render the phase breakdown as an aligned, colored text diagram."""
    phases = PhaseDurations.from_cumulative(timings)
    boundaries = _phase_boundaries()
    milestones = (
        timings.namelookup,
        timings.connect,
        timings.pretransfer,
        timings.starttransfer,
        timings.total,
    )

    rows = [
        _title_row(),
        _bracket_row(phases, boundaries),
        _separator_row(boundaries),
    ]
    for index, (label, value) in enumerate(zip(MILESTONE_LABELS, milestones, strict=True)):
        rows.append(_milestone_row(index, label, value, boundaries))
    return "\n".join(rows)


def format_connection(metrics: RawMetrics) -> str:
    """Describe the remote and local endpoints of the connection."""
    remote = f"{Color.CYAN.wrap(metrics.remote_ip)}:{Color.CYAN.wrap(metrics.remote_port)}"
    return f"Connected to {remote} from {metrics.local_ip}:{metrics.local_port}"


def format_speed(metrics: RawMetrics) -> str:
    """Describe download and upload speed in KiB/s."""
    download = Color.CYAN.wrap(f"{metrics.speed_download / 1024:.1f}")
    upload = Color.CYAN.wrap(f"{metrics.speed_upload / 1024:.1f}")
    return f"speed_download: {download} KiB/s, speed_upload: {upload} KiB/s"


def format_body(body: str, limit: int = BODY_PREVIEW_LIMIT) -> str:
    """Return the body, truncated to ``limit`` characters."""
    if len(body) <= limit:
        return body
    return f"{body[:limit]}\n{Color.GREEN.wrap('...')} ({len(body) - limit} more characters)"


# =============================================================================
# Curl
# =============================================================================


def find_disallowed_option(curl_args: list[str]) -> str | None:
    """Return the first passthrough option that conflicts with the fixed flags."""
    for option in DISALLOWED_CURL_OPTIONS:
        if option in curl_args:
            return option
    return None


def build_curl_command(url: str, curl_args: list[str], curl_bin: str = "curl") -> list[str]:
    return [
        curl_bin,
        "-w",
        CURL_WRITE_OUT_FORMAT,
        "-D",
        "-",
        "-o",
        "-",
        "-s",
        *curl_args,
        url,
    ]


def run_curl(url: str, curl_args: list[str], curl_bin: str = "curl") -> str:
    """Run curl once and return its combined header, body and metrics output."""
    command = build_curl_command(url, curl_args, curl_bin)
    logger.debug(f"Running: {command}")

    try:
        completed = subprocess.run(command, capture_output=True, check=False)
    except FileNotFoundError as exc:
        raise TransferError(1, f"{curl_bin}: command not found") from exc

    stderr = completed.stderr.decode("utf-8", errors="replace")
    if completed.returncode != 0:
        logger.debug(f"curl exited with {completed.returncode}")
        raise TransferError(completed.returncode, stderr)

    return completed.stdout.decode("utf-8", errors="replace")


# =============================================================================
# Output
# =============================================================================


def _print_block(block: str) -> None:
    console.print(Text.from_ansi(block), soft_wrap=True)


def report(output: str, options: DisplayOptions) -> int:
    """Print headers, optional sections and the timing diagram.

    Returns the process exit code: 1 when the timing diagram could not be
    rendered, 0 otherwise.
    """
    headers, _ = split_response(output)

    metrics: RawMetrics | None = None
    error: HttpstatError | None = None
    try:
        metrics = extract_metrics(output)
    except (MissingPayloadError, MetricsParseError) as exc:
        error = exc

    if options.show_ip and metrics is not None:
        _print_block(format_connection(metrics))

    if headers is None:
        logger.warning("No header/body separator in curl output, skipping headers")
    else:
        _print_block(colorize_headers(headers))
        console.print()

    if options.show_body:
        _print_block(format_body(extract_body(output)))
        console.print()

    if metrics is None:
        typer.echo(str(error), err=True)
        return 1

    _print_block(render_timing_diagram(metrics.to_milliseconds()))
    console.print()

    if options.show_speed:
        _print_block(format_speed(metrics))
        console.print()

    return 0


# =============================================================================
# CLI
# =============================================================================

app = typer.Typer(
    name="httpstat",
    help="Visualize curl timing statistics",
    add_completion=False,
)


def setup_logging(debug: bool) -> None:
    """Configure logging."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"httpstat {__version__}")
        raise typer.Exit()


@app.command(
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "help_option_names": ["-h", "--help"],
    }
)
def httpstat(
    ctx: typer.Context,
    url: str | None = typer.Argument(None, help="URL to request"),
    curl_args: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Extra options passed through to curl"
    ),
    show_ip: bool = typer.Option(
        True, "--show-ip/--no-show-ip", envvar="HTTPSTAT_SHOW_IP", help="Show connection endpoints"
    ),
    show_body: bool = typer.Option(
        False, "--show-body", envvar="HTTPSTAT_SHOW_BODY", help="Show the response body"
    ),
    show_speed: bool = typer.Option(
        False, "--show-speed", envvar="HTTPSTAT_SHOW_SPEED", help="Show transfer speeds"
    ),
    curl_bin: str = typer.Option(
        "curl", "--curl-bin", envvar="HTTPSTAT_CURL_BIN", help="curl executable to run"
    ),
    debug: bool = typer.Option(
        False, "--debug", envvar="HTTPSTAT_DEBUG", help="Enable debug logging"
    ),
    version: bool = typer.Option(  # noqa: ARG001
        False, "--version", callback=_version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    """Request URL with curl and show where the time went."""
    setup_logging(debug)

    if url is None:
        typer.echo(ctx.get_help())
        typer.echo("Error: missing URL", err=True)
        raise typer.Exit(1)

    extra_args = [*(curl_args or []), *ctx.args]
    disallowed = find_disallowed_option(extra_args)
    if disallowed is not None:
        typer.echo(f"Error: {disallowed} is not allowed in extra curl args", err=True)
        raise typer.Exit(1)

    options = DisplayOptions(show_ip=show_ip, show_body=show_body, show_speed=show_speed)

    try:
        output = run_curl(url, extra_args, curl_bin=curl_bin)
        exit_code = report(output, options)
    except TransferError as e:
        typer.echo(f"curl error: {e.stderr.rstrip()}", err=True)
        raise typer.Exit(e.returncode) from e
    except KeyboardInterrupt:
        typer.echo("\n\nInterrupted by user", err=True)
        raise typer.Exit(130) from None
    except Exception as e:
        typer.echo(f"\nError: {e}", err=True)
        raise typer.Exit(1) from e

    if exit_code:
        raise typer.Exit(exit_code)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
