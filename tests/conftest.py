"""Shared fixtures for gatedrun tests.

Provides:
- Router + per-command Rego modules written into a temporary policy dir
- A private bin dir on PATH with ``pyrun`` (the test interpreter) and a
  fake ``curl`` shell script
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

ROUTER_POLICY = """\
package sandbox.main

import rego.v1

default allow := false

allow if {
	data.sandbox[input.command].allow
	env_allowed
}

env_allowed if count(input.env) == 0

env_allowed if data.sandbox[input.command].allow_env
"""

PYRUN_POLICY = """\
package sandbox.pyrun

import rego.v1

default allow := false

allow if input.args[0] == "-c"

allow_env if {
	every name, _ in input.env {
		startswith(name, "GATEDRUN_TEST_")
	}
}
"""

CURL_POLICY_TEMPLATE = """\
package sandbox.curl

import rego.v1

default allow := false

allow if {{
	startswith(input.path, "{prefix}")
	input.args == ["-I", "https://example.com"]
}}
"""

BROKEN_POLICY = "package sandbox.pyrun\n\ndefault allow := false\nallow if"

FAKE_CURL = """\
#!/bin/sh
echo "HTTP/2 200"
echo "curl $*" 1>&2
"""


def write_policy(directory: Path, modules: dict[str, str], router: bool = True) -> Path:
    """Write ``{relative path: source}`` (plus the router) under ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    if router:
        (directory / "main.rego").write_text(ROUTER_POLICY)
    for rel, source in modules.items():
        target = directory / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(source)
    return directory


def py(code: str) -> list[str]:
    """Arguments for running ``code`` with the ``pyrun`` interpreter."""
    return ["-c", code]


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` from sync code (TestClient tests)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


async def async_wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


# ── Executables ──────────────────────────────────────────────────────────────


@pytest.fixture
def bin_dir(tmp_path: Path, monkeypatch) -> Path:
    """Private bin dir prepended to PATH."""
    d = tmp_path / "bin"
    d.mkdir()
    (d / "pyrun").symlink_to(sys.executable)
    curl = d / "curl"
    curl.write_text(FAKE_CURL)
    curl.chmod(0o755)
    monkeypatch.setenv("PATH", f"{d}{os.pathsep}{os.environ.get('PATH', '')}")
    return d


# ── Policies ─────────────────────────────────────────────────────────────────


@pytest.fixture
def policy_dir(tmp_path: Path, bin_dir: Path) -> Path:
    """Router + pyrun + curl modules; curl is pinned to the private bin dir."""
    return write_policy(
        tmp_path / "policy",
        {
            "pyrun.rego": PYRUN_POLICY,
            "commands/curl.rego": CURL_POLICY_TEMPLATE.format(prefix=f"{bin_dir}/"),
        },
    )
