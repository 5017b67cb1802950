import subprocess

import pytest

from portblock.errors import QueryFailedError, UnsupportedOSError
from portblock.net import ephemeral
from portblock.net.ephemeral import (
    StaticEphemeralRange,
    SysctlEphemeralRangeProvider,
    get_ephemeral_range_provider,
    parse_port_range,
)


def _ok(stdout):
    return lambda cmd: subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


def test_linux_range_from_sysctl(fake_subprocess_run):
    seen = []

    def sysctl(cmd):
        seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="32768\t60999\n", stderr="")

    fake_subprocess_run("sysctl", sysctl)
    assert SysctlEphemeralRangeProvider("linux").get_range() == (32768, 60999)
    assert seen == [["sysctl", "-n", "net.ipv4.ip_local_port_range"]]


def test_darwin_range_reads_first_and_last(fake_subprocess_run):
    seen = []

    def sysctl(cmd):
        seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="49152\n65535\n", stderr="")

    fake_subprocess_run("sysctl", sysctl)
    assert SysctlEphemeralRangeProvider("darwin").get_range() == (49152, 65535)
    assert seen[0][-2:] == ["net.inet.ip.portrange.first", "net.inet.ip.portrange.last"]


def test_unsupported_os_fails_explicitly():
    with pytest.raises(UnsupportedOSError) as exc:
        SysctlEphemeralRangeProvider("windows").get_range()
    assert exc.value.os_name == "windows"


def test_nonzero_exit_is_query_failure(fake_subprocess_run):
    fake_subprocess_run(
        "sysctl",
        lambda cmd: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="unknown oid"),
    )
    with pytest.raises(QueryFailedError, match="unknown oid"):
        SysctlEphemeralRangeProvider("linux").get_range()


def test_garbage_output_is_query_failure(fake_subprocess_run):
    fake_subprocess_run("sysctl", _ok("not a range\n"))
    with pytest.raises(QueryFailedError):
        SysctlEphemeralRangeProvider("darwin").get_range()


def test_timeout_is_query_failure(monkeypatch):
    def _run(cmd, capture_output=True, text=True, timeout=None):
        raise subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(subprocess, "run", _run)
    with pytest.raises(QueryFailedError):
        SysctlEphemeralRangeProvider("linux", timeout=1).get_range()


def test_linux_falls_back_to_proc_without_sysctl(monkeypatch, tmp_path):
    def _run(cmd, capture_output=True, text=True, timeout=None):
        raise FileNotFoundError("sysctl")

    proc = tmp_path / "ip_local_port_range"
    proc.write_text("1024\t4999\n")
    monkeypatch.setattr(subprocess, "run", _run)
    monkeypatch.setattr(ephemeral, "LINUX_PROC_PATH", proc)
    assert SysctlEphemeralRangeProvider("linux").get_range() == (1024, 4999)


def test_linux_without_sysctl_or_proc_fails(monkeypatch, tmp_path):
    def _run(cmd, capture_output=True, text=True, timeout=None):
        raise FileNotFoundError("sysctl")

    monkeypatch.setattr(subprocess, "run", _run)
    monkeypatch.setattr(ephemeral, "LINUX_PROC_PATH", tmp_path / "missing")
    with pytest.raises(QueryFailedError):
        SysctlEphemeralRangeProvider("linux").get_range()


def test_factory_honours_override():
    provider = get_ephemeral_range_provider("Darwin")
    assert provider.os_name == "darwin"


def test_default_os_is_current_platform(monkeypatch):
    monkeypatch.setattr(ephemeral.sys, "platform", "linux")
    assert get_ephemeral_range_provider().os_name == "linux"


def test_static_range():
    assert StaticEphemeralRange(10, 20).get_range() == (10, 20)


def test_parse_port_range_tolerates_whitespace():
    assert parse_port_range("  32768   60999  \n") == (32768, 60999)
