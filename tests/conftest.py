"""Shared fixtures: captured consoles, a clean environment and a fake curl."""

import io
import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
from rich.console import Console

from httpstat import cli

SAMPLE_METRICS = {
    "time_namelookup": 0.012,
    "time_connect": 0.045,
    "time_appconnect": 0.11,
    "time_pretransfer": 0.112,
    "time_redirect": 0.0,
    "time_starttransfer": 0.25,
    "time_total": 0.31,
    "speed_download": 20480.0,
    "speed_upload": 512.0,
    "remote_ip": "93.184.216.34",
    "remote_port": 443,
    "local_ip": "192.168.1.10",
    "local_port": 52344,
}

SAMPLE_HEADERS = (
    "HTTP/1.1 200 OK\r\n"
    "Content-Type: text/html; charset=UTF-8\r\n"
    "Date: Mon, 12 Oct 2026 10:00:00 GMT\r\n"
    "\r\n"
)


class FakeCurl:
    """Stands in for subprocess.run and writes the files curl would write."""

    def __init__(self):
        self.calls = []
        self.returncode = 0
        self.stdout = json.dumps(SAMPLE_METRICS)
        self.stderr = ""
        self.headers = SAMPLE_HEADERS
        self.body = b"<html>hello</html>"
        self.error = None

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.error is not None:
            raise self.error
        if self.returncode == 0:
            Path(cmd[cmd.index("-D") + 1]).write_text(self.headers)
            Path(cmd[cmd.index("-o") + 1]).write_bytes(self.body)
        return subprocess.CompletedProcess(
            cmd, self.returncode, stdout=self.stdout, stderr=self.stderr
        )

    @property
    def body_path(self):
        return Path(self.calls[-1][self.calls[-1].index("-o") + 1])

    @property
    def header_path(self):
        return Path(self.calls[-1][self.calls[-1].index("-D") + 1])


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop any HTTPSTAT_* variables inherited from the shell."""
    for key in (
        cli.ENV_SHOW_BODY,
        cli.ENV_SHOW_IP,
        cli.ENV_SHOW_SPEED,
        cli.ENV_SAVE_BODY,
        cli.ENV_CURL_BIN,
        cli.ENV_METRICS_ONLY,
        cli.ENV_DEBUG,
        cli.ENV_TIMEOUT,
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def output(monkeypatch):
    """Capture what the CLI renders through its rich consoles."""
    stdout = io.StringIO()
    stderr = io.StringIO()
    monkeypatch.setattr(cli, "console", Console(file=stdout, color_system=None, width=200))
    monkeypatch.setattr(cli, "err_console", Console(file=stderr, color_system=None, width=200))
    return SimpleNamespace(stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_curl(monkeypatch):
    """Replace subprocess.run with a FakeCurl."""
    fake = FakeCurl()
    monkeypatch.setattr(cli.subprocess, "run", fake)
    return fake


@pytest.fixture
def metrics():
    return cli.CurlMetrics(**SAMPLE_METRICS)


@pytest.fixture
def sample_metrics():
    return dict(SAMPLE_METRICS)
