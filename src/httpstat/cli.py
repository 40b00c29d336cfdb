#!/usr/bin/env python3
"""httpstat CLI.

Visualize curl request timings: DNS lookup, TCP connection, TLS handshake,
server processing and content transfer.
"""

from __future__ import annotations

__version__ = "0.1.0"

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Mapping, Sequence
from itertools import accumulate, pairwise
from pathlib import Path
from types import TracebackType

import typer
from pydantic import BaseModel, ConfigDict, ValidationError
from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)
console = Console()
err_console = Console(stderr=True)


# =============================================================================
# Errors
# =============================================================================


class HttpstatError(Exception):
    """Base class for errors that end a run."""

    exit_code = 1


class DisallowedFlagError(HttpstatError):
    """A passthrough argument collides with a flag httpstat sets itself."""


class CurlInvocationError(HttpstatError):
    """curl could not be started or exited with a failure status."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class MetricsParseError(HttpstatError):
    """The write-out payload printed by curl is not a valid metrics record."""


# =============================================================================
# Configuration
# =============================================================================

ENV_SHOW_BODY = "HTTPSTAT_SHOW_BODY"
ENV_SHOW_IP = "HTTPSTAT_SHOW_IP"
ENV_SHOW_SPEED = "HTTPSTAT_SHOW_SPEED"
ENV_SAVE_BODY = "HTTPSTAT_SAVE_BODY"
ENV_CURL_BIN = "HTTPSTAT_CURL_BIN"
ENV_METRICS_ONLY = "HTTPSTAT_METRICS_ONLY"
ENV_DEBUG = "HTTPSTAT_DEBUG"
ENV_TIMEOUT = "HTTPSTAT_TIMEOUT"

_TRUE_VALUES = frozenset({"true", "1", "yes"})
_FALSE_VALUES = frozenset({"false", "0", "no"})


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    value = environ.get(key)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_str(environ: Mapping[str, str], key: str, default: str) -> str:
    value = (environ.get(key) or "").strip()
    return value or default


class Config(BaseModel):
    """Run options, read once from the environment."""

    model_config = ConfigDict(frozen=True)

    show_body: bool = False
    show_ip: bool = True
    show_speed: bool = False
    save_body: bool = True
    curl_bin: str = "curl"
    metrics_only: bool = False
    debug: bool = False
    timeout_secs: int = 10

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a config from HTTPSTAT_* variables.

        Values that cannot be parsed fall back to the field default.
        """
        env = os.environ if environ is None else environ
        return cls(
            show_body=_env_bool(env, ENV_SHOW_BODY, False),
            show_ip=_env_bool(env, ENV_SHOW_IP, True),
            show_speed=_env_bool(env, ENV_SHOW_SPEED, False),
            save_body=_env_bool(env, ENV_SAVE_BODY, True),
            curl_bin=_env_str(env, ENV_CURL_BIN, "curl"),
            metrics_only=_env_bool(env, ENV_METRICS_ONLY, False),
            debug=_env_bool(env, ENV_DEBUG, False),
            timeout_secs=_env_int(env, ENV_TIMEOUT, 10),
        )


# =============================================================================
# Metrics Models
# =============================================================================


class CurlMetrics(BaseModel):
    """Write-out values reported by curl (times are cumulative seconds)."""

    model_config = ConfigDict(frozen=True, strict=True)

    time_namelookup: float
    time_connect: float
    time_appconnect: float
    time_pretransfer: float
    time_redirect: float
    time_starttransfer: float
    time_total: float
    speed_download: float
    speed_upload: float
    remote_ip: str
    remote_port: int
    local_ip: str
    local_port: int


class PhaseDurations(BaseModel):
    """Per-phase request durations in whole milliseconds."""

    dns: int
    connect: int
    tls: int
    server: int
    transfer: int
    https: bool

    @property
    def total(self) -> int:
        return self.dns + self.connect + self.tls + self.server + self.transfer


def parse_metrics(raw: str) -> CurlMetrics:
    """Parse curl's write-out JSON into a metrics record."""
    try:
        return CurlMetrics.model_validate_json(raw)
    except ValidationError as exc:
        raise MetricsParseError(f"Could not parse curl metrics: {exc}") from exc


def is_https(url: str) -> bool:
    return url.startswith("https://")


def _to_ms(seconds: float) -> int:
    return int(seconds * 1000)


def compute_phases(metrics: CurlMetrics, https: bool) -> PhaseDurations:
    """Split curl's cumulative timers into per-phase durations.

    Marks that go backwards (seen after redirects) are raised to the previous
    mark, so every phase is >= 0 and the phases add up to the total.
    """
    marks = [_to_ms(metrics.time_namelookup), _to_ms(metrics.time_connect)]
    if https:
        marks.append(_to_ms(metrics.time_pretransfer))
    marks.extend([_to_ms(metrics.time_starttransfer), _to_ms(metrics.time_total)])

    clamped = list(accumulate(marks, max, initial=0))
    if clamped[1:] != marks:
        logger.warning(f"Non-monotonic curl timings {marks}, clamped to {clamped[1:]}")

    durations = [end - start for start, end in pairwise(clamped)]
    if https:
        dns, connect, tls, server, transfer = durations
    else:
        dns, connect, server, transfer = durations
        tls = 0

    return PhaseDurations(
        dns=dns, connect=connect, tls=tls, server=server, transfer=transfer, https=https
    )


# =============================================================================
# Flag Validation
# =============================================================================

DISALLOWED_CURL_FLAGS = (
    "-w",
    "-D",
    "-o",
    "-s",
    "--write-out",
    "--dump-header",
    "--output",
    "--silent",
)


def validate_curl_args(curl_args: Sequence[str]) -> None:
    """Reject passthrough arguments that would break output capture."""
    rejected = [
        arg
        for arg in curl_args
        if any(arg == flag or arg.startswith(f"{flag}=") for flag in DISALLOWED_CURL_FLAGS)
    ]
    if rejected:
        raise DisallowedFlagError(
            f"Disallowed curl option(s): {', '.join(rejected)}. "
            f"httpstat sets {', '.join(DISALLOWED_CURL_FLAGS)} itself"
        )


# =============================================================================
# curl Invocation
# =============================================================================

# Order matters: curl substitutes these tokens into the write-out template.
CURL_METRIC_FIELDS = (
    "time_namelookup",
    "time_connect",
    "time_appconnect",
    "time_pretransfer",
    "time_redirect",
    "time_starttransfer",
    "time_total",
    "speed_download",
    "speed_upload",
    "remote_ip",
    "remote_port",
    "local_ip",
    "local_port",
)
_STRING_METRIC_FIELDS = frozenset({"remote_ip", "local_ip"})


def build_write_out_format() -> str:
    """Return the single-line JSON template passed to ``curl -w``."""
    parts: list[str] = []
    for name in CURL_METRIC_FIELDS:
        token = f"%{{{name}}}"
        if name in _STRING_METRIC_FIELDS:
            token = f'"{token}"'
        parts.append(f'"{name}": {token}')
    return "{" + ", ".join(parts) + "}"


CURL_WRITE_OUT_FORMAT = build_write_out_format()


class ResponseFiles:
    """Temporary header and body files owned by one run.

    The header file is always removed on exit. The body file survives only when
    ``keep_body`` is set and the block finished without an exception.
    """

    def __init__(self, *, keep_body: bool = False) -> None:
        self.keep_body = keep_body
        self.header_path: Path | None = None
        self.body_path: Path | None = None

    def __enter__(self) -> tuple[Path, Path]:
        try:
            self.header_path = self._create("httpstat-header-")
            self.body_path = self._create("httpstat-body-")
        except OSError:
            self.cleanup(keep_body=False)
            raise
        return self.header_path, self.body_path

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup(keep_body=self.keep_body and exc_type is None)

    @staticmethod
    def _create(prefix: str) -> Path:
        with tempfile.NamedTemporaryFile(prefix=prefix, delete=False) as f:
            return Path(f.name)

    def cleanup(self, *, keep_body: bool) -> None:
        """Delete the temp files, optionally leaving the body in place."""
        paths = [self.header_path] if keep_body else [self.header_path, self.body_path]
        for path in paths:
            if path is None:
                continue
            path.unlink(missing_ok=True)
            logger.debug(f"Removed temp file: {path}")


class CurlRunner:
    """Run curl once and collect its write-out metrics."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def build_command(
        self,
        url: str,
        curl_args: Sequence[str],
        header_path: Path,
        body_path: Path,
    ) -> list[str]:
        return [
            self.config.curl_bin,
            "-w",
            CURL_WRITE_OUT_FORMAT,
            "-D",
            str(header_path),
            "-o",
            str(body_path),
            "-sS",
            "--max-time",
            str(self.config.timeout_secs),
            *curl_args,
            url,
        ]

    def run(
        self,
        url: str,
        curl_args: Sequence[str],
        header_path: Path,
        body_path: Path,
    ) -> CurlMetrics:
        """Invoke curl and parse the metrics it prints on stdout.

        Raises CurlInvocationError when curl cannot be started or fails, and
        MetricsParseError when its output is not a complete metrics record.
        """
        cmd = self.build_command(url, curl_args, header_path, body_path)
        if self.config.debug:
            console.print(
                Text.assemble(("Executing: ", "bright_blue"), shlex.join(cmd)), soft_wrap=True
            )

        started = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            raise CurlInvocationError(f"Could not run {self.config.curl_bin}: {exc}") from exc
        logger.debug(
            f"curl exited with status {result.returncode} "
            f"after {time.monotonic() - started:.3f}s"
        )

        if result.returncode != 0:
            stderr = result.stderr.strip() or f"exit status {result.returncode}"
            raise CurlInvocationError(
                f"curl error: {stderr}",
                exit_code=result.returncode if result.returncode > 0 else 1,
            )

        return parse_metrics(result.stdout)


# =============================================================================
# Output Formatter
# =============================================================================

BODY_DISPLAY_LIMIT_BYTES = 1024
BYTES_PER_KIB = 1024

# Phase labels are centred in 7 columns, cumulative labels left-aligned in 7.
HTTPS_CHART_TEMPLATE = """
  DNS Lookup   TCP Connection   TLS Handshake   Server Processing   Content Transfer
[   {dns}  |     {connect}    |    {tls}    |      {server}      |      {transfer}     ]
             |                |               |                   |                  |
    namelookup:{t_namelookup}        |               |                   |                  |
                        connect:{t_connect}       |                   |                  |
                                    pretransfer:{t_pretransfer}           |                  |
                                                      starttransfer:{t_starttransfer}          |
                                                                                 total:{t_total}
"""

HTTP_CHART_TEMPLATE = """
  DNS Lookup   TCP Connection   Server Processing   Content Transfer
[   {dns}  |     {connect}    |      {server}      |      {transfer}     ]
             |                |                   |                  |
    namelookup:{t_namelookup}        |                   |                  |
                        connect:{t_connect}           |                  |
                                      starttransfer:{t_starttransfer}          |
                                                                 total:{t_total}
"""


def render_timing_chart(phases: PhaseDurations) -> Text:
    """Render phase durations as the ASCII timing chart."""
    namelookup = phases.dns
    connect = namelookup + phases.connect
    pretransfer = connect + phases.tls
    starttransfer = pretransfer + phases.server

    template = HTTPS_CHART_TEMPLATE if phases.https else HTTP_CHART_TEMPLATE
    chart = template.format(
        dns=f"{phases.dns}ms".center(7),
        connect=f"{phases.connect}ms".center(7),
        tls=f"{phases.tls}ms".center(7),
        server=f"{phases.server}ms".center(7),
        transfer=f"{phases.transfer}ms".center(7),
        t_namelookup=f"{namelookup}ms".ljust(7),
        t_connect=f"{connect}ms".ljust(7),
        t_pretransfer=f"{pretransfer}ms".ljust(7),
        t_starttransfer=f"{starttransfer}ms".ljust(7),
        t_total=f"{phases.total}ms".ljust(7),
    )
    text = Text("\n".join(line.rstrip() for line in chart.splitlines()))
    text.highlight_regex(r"\d+ms", "cyan")
    return text


class OutputFormatter:
    """Print connection info, headers, body, timings and speed for one run."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def print_report(
        self,
        metrics: CurlMetrics,
        url: str,
        header_path: Path,
        body_path: Path,
    ) -> None:
        """Print every enabled section in display order."""
        if self.config.metrics_only:
            self.print_metrics_json(metrics)
            return

        if self.config.show_ip:
            self.print_connection_info(metrics)
            console.print()

        self.print_headers(header_path)
        console.print()
        self.print_body(body_path)
        self.print_timing_chart(metrics, url)

        if self.config.show_speed:
            console.print()
            self.print_speed(metrics)

    def print_metrics_json(self, metrics: CurlMetrics) -> None:
        console.print(
            metrics.model_dump_json(indent=2),
            markup=False,
            highlight=False,
            emoji=False,
            soft_wrap=True,
        )

    def print_connection_info(self, metrics: CurlMetrics) -> None:
        console.print(
            Text.assemble(
                "Connected to ",
                (f"{metrics.remote_ip}:{metrics.remote_port}", "cyan"),
                " from ",
                f"{metrics.local_ip}:{metrics.local_port}",
            ),
            soft_wrap=True,
        )

    def print_headers(self, header_path: Path) -> None:
        """Print response headers with names and values styled apart."""
        raw = header_path.read_text(encoding="utf-8", errors="replace").rstrip()
        for line in raw.splitlines():
            name, sep, value = line.partition(":")
            if sep:
                text = Text.assemble((name + sep, "bright_black"), (value, "cyan"))
            else:
                text = Text(line, style="green")
            console.print(text, soft_wrap=True)

    def print_body(self, body_path: Path) -> None:
        """Show the start of the body and report where it was saved.

        The shown bytes are written to the terminal unchanged. The cut is made
        on bytes and may split a multi-byte character.
        """
        if self.config.show_body:
            with body_path.open("rb") as f:
                head = f.read(BODY_DISPLAY_LIMIT_BYTES + 1)
            console.file.write(head[:BODY_DISPLAY_LIMIT_BYTES].decode("utf-8", errors="replace"))
            ellipsis = Text("...", style="cyan") if len(head) > BODY_DISPLAY_LIMIT_BYTES else Text()
            console.print(ellipsis, soft_wrap=True)
        if self.config.save_body:
            console.print(
                Text.assemble(("Body", "green"), f" stored in: {body_path}"), soft_wrap=True
            )

    def print_timing_chart(self, metrics: CurlMetrics, url: str) -> None:
        phases = compute_phases(metrics, is_https(url))
        console.print(render_timing_chart(phases), soft_wrap=True)

    def print_speed(self, metrics: CurlMetrics) -> None:
        console.print(
            Text.assemble(
                ("Download: ", "green"),
                f"{metrics.speed_download / BYTES_PER_KIB:.1f} KiB/s, ",
                ("Upload: ", "green"),
                f"{metrics.speed_upload / BYTES_PER_KIB:.1f} KiB/s",
            ),
            soft_wrap=True,
        )


# =============================================================================
# CLI
# =============================================================================

ENV_HELP = f"""Environment:

{ENV_SHOW_BODY}=true  Show the first 1024 bytes of the response body

{ENV_SHOW_IP}=false  Hide local and remote IP addresses

{ENV_SHOW_SPEED}=true  Show download and upload speed

{ENV_SAVE_BODY}=false  Delete the response body instead of keeping it

{ENV_CURL_BIN}=/path/to/curl  Use a specific curl binary

{ENV_METRICS_ONLY}=true  Print only the metrics as JSON

{ENV_DEBUG}=true  Print the curl command and debug logs

{ENV_TIMEOUT}=10  Maximum time in seconds for the whole request"""

app = typer.Typer(
    name="httpstat",
    help="Visualize curl request timings",
    add_completion=False,
)


def setup_logging(verbose: bool) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print_error(message: str) -> None:
    err_console.print(message, style="bold red", markup=False, highlight=False, emoji=False)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"httpstat version {__version__}")
        raise typer.Exit()


@app.command(
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
        "help_option_names": ["-h", "--help"],
    },
    epilog=ENV_HELP,
)
def httpstat(
    ctx: typer.Context,
    url: str | None = typer.Argument(  # noqa: B008
        None, help="URL to request; any further arguments are passed to curl", show_default=False
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version information",
    ),
) -> None:
    """Request URL with curl and show where the time went."""
    if url is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    config = Config.from_env()
    setup_logging(config.debug)
    logger.debug(f"Configuration: {config!r}")
    curl_args = list(ctx.args)

    try:
        validate_curl_args(curl_args)
        keep_body = config.save_body and not config.metrics_only
        with ResponseFiles(keep_body=keep_body) as (header_path, body_path):
            metrics = CurlRunner(config).run(url, curl_args, header_path, body_path)
            OutputFormatter(config).print_report(metrics, url, header_path, body_path)

    except KeyboardInterrupt:
        typer.echo("\n\nInterrupted by user", err=True)
        raise typer.Exit(130) from None
    except HttpstatError as e:
        _print_error(f"Error: {e}")
        raise typer.Exit(e.exit_code) from e
    except OSError as e:
        _print_error(f"I/O error: {e}")
        raise typer.Exit(1) from e


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
