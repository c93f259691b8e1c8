"""
Tests for the ShadowPilot process supervisor.

The proxy executable is emulated by small Python scripts run through
``sys.executable``, so spawning, output streaming and exit handling go
through a real child process.
"""

import platform
import sys
import threading
import time

import pytest

from shadowpilot.core import supervisor as supervisor_mod
from shadowpilot.core.errors import AlreadyRunning, BinaryNotFound, InvalidConfiguration, StartFailed
from shadowpilot.core.profile import ProxyConfig
from shadowpilot.core.supervisor import (
    LogLevel,
    ProxyStatus,
    ProxySupervisor,
    SupervisorState,
    parse_log_line,
    parse_traffic_statistics,
)

LONG_RUNNING = """
import time
print("[INFO] listening on 127.0.0.1:1080", flush=True)
print("2024-01-01 [WARN] slow handshake", flush=True)
print("[INFO] statistics: upload=100 download=250", flush=True)
time.sleep(30)
"""

EXITS_AT_ONCE = """
import sys
print("[ERROR] bind failed", flush=True)
sys.exit(3)
"""


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def config():
    return ProxyConfig(server="203.0.113.7", server_port=8388, password="s3cret")


@pytest.fixture
def make_supervisor(tmp_path):
    """Build a supervisor running the given script as the proxy executable."""
    created = []

    def factory(script=LONG_RUNNING, **kwargs):
        binary = tmp_path / "fake_sslocal.py"
        binary.write_text(script)
        sup = ProxySupervisor(str(binary), command_prefix=[sys.executable], **kwargs)
        sup.logs = []
        sup.events = []
        sup.on_log(lambda level, msg: sup.logs.append((level, msg)))
        sup.on_status(sup.events.append)
        created.append(sup)
        return sup

    yield factory
    for sup in created:
        sup.stop()


def _exit_logged(sup):
    return any(msg.startswith("Process terminated with status") for _, msg in sup.logs)


# ── Parsing ──────────────────────────────────────────────────────────────────


class TestParseLogLine:
    def test_error_line(self):
        assert parse_log_line("[ERROR] something bad") == (LogLevel.ERROR, "something bad")

    def test_no_bracket_is_info_full_line(self):
        line = "plain output without a level"
        assert parse_log_line(line) == (LogLevel.INFO, line)

    def test_prefix_before_token(self):
        assert parse_log_line("2024-01-01 [DEBUG] resolving") == (LogLevel.DEBUG, "resolving")

    def test_priority_order(self):
        level, message = parse_log_line("[INFO] upstream said [ERROR] boom")
        assert level == LogLevel.ERROR
        assert message == "boom"

    def test_trace_and_warn(self):
        assert parse_log_line("[TRACE] x")[0] == LogLevel.TRACE
        assert parse_log_line("[WARN]  y ")[1] == "y"


class TestParseTrafficStatistics:
    def test_both_counters(self):
        assert parse_traffic_statistics("statistics: upload=100 download=250") == (100, 250)

    def test_missing_download_is_zero(self):
        assert parse_traffic_statistics("statistics: upload=100") == (100, 0)

    def test_malformed_tokens_are_zero(self):
        assert parse_traffic_statistics("statistics: upload=abc download=-5") == (0, 0)

    def test_no_tokens(self):
        assert parse_traffic_statistics("statistics:") == (0, 0)


class TestHandleLine:
    def test_statistics_line_feeds_aggregator(self):
        sup = ProxySupervisor("/nonexistent/sslocal")
        samples = []
        sup.on_statistics(lambda up, down: samples.append((up, down)))

        sup.handle_line("[INFO] statistics: upload=100 download=250")
        sup.handle_line("[INFO] statistics: upload=160 download=250")

        assert samples == [(100, 250), (160, 250)]
        assert sup.statistics.upload_bytes == 160
        assert sup.statistics.download_bytes == 250

    def test_failing_callback_does_not_break_others(self):
        sup = ProxySupervisor("/nonexistent/sslocal")
        seen = []

        def broken(level, message):
            raise RuntimeError("observer bug")

        sup.on_log(broken)
        sup.on_log(lambda level, message: seen.append(message))
        sup.handle_line("[WARN] careful")
        assert seen == ["careful"]


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestStartErrors:
    def test_invalid_config_checked_first(self, config):
        sup = ProxySupervisor("/nonexistent/sslocal")
        bad = ProxyConfig(server="x", server_port=0, password="pw")
        with pytest.raises(InvalidConfiguration):
            sup.start(bad)
        assert sup.state == SupervisorState.IDLE

    def test_binary_not_found(self, config, tmp_path):
        sup = ProxySupervisor(str(tmp_path / "missing"))
        with pytest.raises(BinaryNotFound):
            sup.start(config)
        assert sup.state == SupervisorState.IDLE
        assert sup.current_config is None

    @pytest.mark.skipif(platform.system() == "Windows", reason="POSIX exec permissions")
    def test_spawn_failure_moves_to_failed(self, config, tmp_path):
        binary = tmp_path / "not_executable"
        binary.write_text("just text")
        binary.chmod(0o644)
        sup = ProxySupervisor(str(binary))

        with pytest.raises(StartFailed):
            sup.start(config)
        assert sup.state == SupervisorState.FAILED
        assert sup.failure_reason
        assert sup.current_config is None


class TestRunningProcess:
    def test_start_streams_logs_and_statistics(self, make_supervisor, config):
        sup = make_supervisor()
        sup.start(config)

        assert sup.state == SupervisorState.RUNNING
        assert sup.current_config == config
        assert sup.pid is not None

        assert wait_for(lambda: len(sup.logs) >= 3)
        assert sup.logs[0] == (LogLevel.INFO, "listening on 127.0.0.1:1080")
        assert sup.logs[1] == (LogLevel.WARN, "slow handshake")
        assert wait_for(lambda: sup.statistics.upload_bytes == 100)
        assert sup.statistics.download_bytes == 250
        assert sup.is_running

    def test_second_start_raises_and_keeps_state(self, make_supervisor, config):
        sup = make_supervisor()
        sup.start(config)
        pid, generation = sup.pid, sup.generation

        other = ProxyConfig(server="198.51.100.1", server_port=443, password="pw")
        with pytest.raises(AlreadyRunning):
            sup.start(other)

        assert sup.state == SupervisorState.RUNNING
        assert sup.pid == pid
        assert sup.generation == generation
        assert sup.current_config == config

    def test_stop_emits_disconnected_once(self, make_supervisor, config):
        sup = make_supervisor()
        sup.start(config)
        sup.stop()

        assert sup.state == SupervisorState.STOPPED
        assert sup.current_config is None
        assert wait_for(lambda: _exit_logged(sup))
        assert [e.status for e in sup.events] == [ProxyStatus.DISCONNECTED]

    def test_stop_is_idempotent(self, make_supervisor, config):
        sup = make_supervisor()
        sup.stop()
        assert sup.events == []
        sup.start(config)
        sup.stop()
        sup.stop()
        assert len(sup.events) == 1

    def test_process_exit_is_not_an_error(self, make_supervisor, config):
        sup = make_supervisor(EXITS_AT_ONCE)
        sup.start(config)

        assert wait_for(lambda: sup.state == SupervisorState.STOPPED)
        assert wait_for(lambda: len(sup.events) == 1)
        assert sup.events[0].status == ProxyStatus.DISCONNECTED
        assert sup.current_config is None
        assert sup.failure_reason == ""
        assert (LogLevel.ERROR, "bind failed") in sup.logs
        assert (LogLevel.INFO, "Process terminated with status: 3") in sup.logs

    def test_restart_after_exit_resets_statistics(self, make_supervisor, config):
        sup = make_supervisor()
        sup.start(config)
        assert wait_for(lambda: sup.statistics.upload_bytes == 100)
        sup.stop()

        sup.start(config)
        assert sup.state == SupervisorState.RUNNING
        assert wait_for(lambda: sup.statistics.upload_bytes == 100)

    def test_lifecycle_records_in_log_file(self, make_supervisor, config, tmp_path):
        log_file = tmp_path / "logs" / "supervisor.log"
        sup = make_supervisor(log_file=log_file)
        sup.start(config)
        sup.stop()

        text = log_file.read_text()
        assert "started pid=" in text
        assert "stopped pid=" in text
        assert "s3cret" not in text

    def test_get_status(self, make_supervisor, config):
        sup = make_supervisor()
        assert sup.get_status()["state"] == "idle"
        sup.start(config)
        status = sup.get_status()
        assert status["state"] == "running"
        assert status["server"] == "203.0.113.7:8388"
        assert status["local"] == "127.0.0.1:1080"


class TestStopDuringStart:
    @pytest.fixture
    def slow_spawn(self, monkeypatch):
        """Hold ``Popen`` until the test releases it."""
        release = threading.Event()
        spawned = []
        real_popen = supervisor_mod.subprocess.Popen

        def popen(*args, **kwargs):
            release.wait(5)
            proc = real_popen(*args, **kwargs)
            spawned.append(proc)
            return proc

        monkeypatch.setattr(supervisor_mod.subprocess, "Popen", popen)
        return release, spawned

    def test_stop_while_spawning_terminates_new_process(self, make_supervisor, config, slow_spawn):
        release, spawned = slow_spawn
        sup = make_supervisor()
        results = []
        starter = threading.Thread(target=lambda: results.append(sup.start(config)))
        starter.start()

        assert wait_for(lambda: sup.state == SupervisorState.STARTING)
        generation = sup.generation
        sup.stop()
        assert sup.state == SupervisorState.STOPPED
        assert sup.current_config is None
        assert sup.generation == generation + 1

        release.set()
        starter.join(timeout=5)

        assert results == [False]
        assert not sup.is_running
        assert sup.state == SupervisorState.STOPPED
        assert sup.pid is None
        assert wait_for(lambda: spawned[0].poll() is not None)
        assert [e.status for e in sup.events] == [ProxyStatus.DISCONNECTED]

    def test_start_after_cancelled_start(self, make_supervisor, config, slow_spawn):
        release, _ = slow_spawn
        sup = make_supervisor()
        starter = threading.Thread(target=sup.start, args=(config,))
        starter.start()
        assert wait_for(lambda: sup.state == SupervisorState.STARTING)
        sup.stop()
        release.set()
        starter.join(timeout=5)

        assert sup.start(config) is True
        assert sup.state == SupervisorState.RUNNING
