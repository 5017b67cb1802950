import socket
import subprocess
import types
from typing import Callable, Dict, Optional

import pytest

from portblock.metrics.prometheus import PortBlockMetrics


@pytest.fixture()
def env(monkeypatch):
    """Helper to set/clear environment variables."""
    def _setter(mapping: Optional[Dict[str, str]] = None, clear: Optional[list[str]] = None):
        if mapping:
            for k, v in mapping.items():
                monkeypatch.setenv(k, v)
        if clear:
            for k in clear:
                monkeypatch.delenv(k, raising=False)
    return _setter


@pytest.fixture()
def metrics():
    """Fresh metrics with their own registry."""
    return PortBlockMetrics()


@pytest.fixture()
def fake_probe():
    """Scriptable probe: ports in `busy` report as in use."""
    state = types.SimpleNamespace(busy=set(), calls=[])

    def probe(port: int) -> bool:
        state.calls.append(port)
        return port in state.busy

    state.probe = probe
    return state


class FixedRandom:
    """Stand-in for random.Random that always picks the same block."""

    def __init__(self, block: int):
        self.block = block
        self.calls = []

    def randrange(self, stop):
        self.calls.append(stop)
        return self.block


@pytest.fixture()
def fixed_rng():
    return FixedRandom


@pytest.fixture()
def listening_port():
    """A port on 127.0.0.1 held by a listening socket for the test's duration."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


@pytest.fixture()
def fake_subprocess_run(monkeypatch):
    """Patch subprocess.run to return scripted outputs based on argv[0]."""
    scripts: Dict[str, Callable[[list[str]], subprocess.CompletedProcess]] = {}

    def register(cmd0: str, func: Callable[[list[str]], subprocess.CompletedProcess]):
        scripts[cmd0] = func

    def _run(cmd, capture_output=True, text=True, timeout=None):
        key = cmd[0] if cmd else ""
        if key in scripts:
            return scripts[key](cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", _run)
    return register
