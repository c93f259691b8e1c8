"""
ShadowPilot Process Supervisor
==============================
Owns the lifecycle of the proxy child process: validates the configuration,
builds the argument vector, spawns the executable with stdout and stderr
merged, parses its output into ``(level, message)`` pairs and traffic
samples, and reports lifecycle changes.

State machine::

    idle → starting → running → stopping → stopped
      any state ──fatal error──▶ failed(reason) ──start()──▶ starting

Process exit is never an error: whatever the exit code, the supervisor moves
to ``stopped``, forgets the current config and publishes ``disconnected``.

Log line grammar::

    ...[LEVEL] message...          LEVEL ∈ ERROR WARN INFO DEBUG TRACE
    ... statistics: upload=123 download=456
"""

from __future__ import annotations

import logging
import os
import platform
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from shadowpilot.core.dispatch import StatusBus
from shadowpilot.core.errors import AlreadyRunning, BinaryNotFound, StartFailed
from shadowpilot.core.profile import ProxyConfig
from shadowpilot.core.statistics import TrafficStatistics

logger = logging.getLogger(__name__)


# ── Enums & Events ───────────────────────────────────────────────────────────

class LogLevel(str, Enum):
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"
    TRACE = "TRACE"

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.ERROR: logging.ERROR,
            LogLevel.WARN: logging.WARNING,
            LogLevel.INFO: logging.INFO,
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.TRACE: logging.DEBUG,
        }[self]


class SupervisorState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class ProxyStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class StatusEvent:
    """A proxy status notification."""
    status: ProxyStatus
    detail: str = ""
    timestamp: float = field(default_factory=time.time, compare=False)


# ── Parsing ──────────────────────────────────────────────────────────────────

# Priority order: the first bracket found wins
_LEVEL_ORDER = [LogLevel.ERROR, LogLevel.WARN, LogLevel.INFO, LogLevel.DEBUG, LogLevel.TRACE]

_UINT = re.compile(r"[0-9]+")

STATISTICS_MARKER = "statistics:"


def parse_log_line(line: str) -> Tuple[LogLevel, str]:
    """Split a process output line into its level and message.

    Lines without a recognized ``[LEVEL]`` token are INFO, message unchanged.
    """
    for level in _LEVEL_ORDER:
        token = f"[{level.value}]"
        if token in line:
            return level, line.split(token, 1)[1].strip()
    return LogLevel.INFO, line


def parse_traffic_statistics(text: str) -> Tuple[int, int]:
    """Extract ``upload=<uint>`` / ``download=<uint>`` tokens.

    Missing or malformed tokens count as 0.
    """
    upload = download = 0
    for token in text.split():
        if token.startswith("upload="):
            value = token[len("upload="):]
            if _UINT.fullmatch(value):
                upload = int(value)
        elif token.startswith("download="):
            value = token[len("download="):]
            if _UINT.fullmatch(value):
                download = int(value)
    return upload, download


# ── Supervisor ───────────────────────────────────────────────────────────────

LogCallback = Callable[[LogLevel, str], None]
StatisticsCallback = Callable[[int, int], None]


class ProxySupervisor:
    """
    Supervises at most one proxy process at a time.

    ``start``/``stop`` return right after initiating the work. Output parsing
    runs on a per-process reader thread; log and statistics callbacks are
    invoked on that thread, in stream order, and must be fast.
    """

    def __init__(
        self,
        binary_path: str,
        status_bus: Optional[StatusBus] = None,
        statistics: Optional[TrafficStatistics] = None,
        command_prefix: Optional[List[str]] = None,
        log_file: Optional[Path] = None,
    ):
        self.binary_path = str(binary_path)
        self.status_bus = status_bus or StatusBus()
        self.statistics = statistics or TrafficStatistics()
        self.command_prefix = list(command_prefix or [])
        self.log_file = log_file
        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen] = None
        self._config: Optional[ProxyConfig] = None
        self._state = SupervisorState.IDLE
        self._failure_reason = ""
        self._generation = 0
        self._log_callbacks: List[LogCallback] = []
        self._stats_callbacks: List[StatisticsCallback] = []

    # ── Observers ────────────────────────────────────────────────────────

    def on_log(self, callback: LogCallback) -> None:
        """Register a callback for every parsed output line."""
        self._log_callbacks.append(callback)

    def on_statistics(self, callback: StatisticsCallback) -> None:
        """Register a callback for raw ``(upload, download)`` samples."""
        self._stats_callbacks.append(callback)

    def on_status(self, callback: Callable[[StatusEvent], None]) -> None:
        self.status_bus.subscribe(callback)

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def failure_reason(self) -> str:
        """Reason of the last ``failed`` transition, empty otherwise."""
        return self._failure_reason if self._state == SupervisorState.FAILED else ""

    @property
    def current_config(self) -> Optional[ProxyConfig]:
        return self._config

    @property
    def generation(self) -> int:
        """Bumped on every start attempt and every effective stop."""
        return self._generation

    @property
    def is_running(self) -> bool:
        with self._lock:
            proc = self._process
            return (
                self._state == SupervisorState.RUNNING
                and proc is not None
                and proc.poll() is None
            )

    @property
    def pid(self) -> Optional[int]:
        proc = self._process
        return proc.pid if proc else None

    def binary_exists(self) -> bool:
        return os.path.isfile(self.binary_path)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self, config: ProxyConfig) -> bool:
        """Validate ``config`` and spawn the proxy process.

        Returns False when ``stop()`` was called while the process was being
        spawned; the new process is then terminated right away.

        Raises:
            InvalidConfiguration: the config failed validation.
            BinaryNotFound: the executable does not exist.
            AlreadyRunning: a session is starting or running.
            StartFailed: the OS could not spawn the process.
        """
        config.validate()

        if not self.binary_exists():
            raise BinaryNotFound(self.binary_path)

        with self._lock:
            if self._state in (SupervisorState.STARTING, SupervisorState.RUNNING):
                raise AlreadyRunning()
            stale = self._process
            self._process = None
            self._generation += 1
            generation = self._generation
            self._state = SupervisorState.STARTING
            self._failure_reason = ""
            self._config = config

        if stale is not None:
            logger.debug(f"Stopping stale proxy process {stale.pid}")
            self._terminate(stale)

        self.statistics.reset()
        command = self.command_prefix + [self.binary_path] + config.to_arguments()
        logger.info(
            f"Starting proxy: {' '.join(self.command_prefix + [self.binary_path] + config.masked_arguments())}"
        )

        try:
            proc = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=platform.system() != "Windows",
            )
        except (OSError, ValueError) as e:
            with self._lock:
                if self._generation == generation:
                    self._state = SupervisorState.FAILED
                    self._failure_reason = str(e)
                    self._config = None
            logger.error(f"Proxy spawn failed: {e}")
            self._log_event(f"spawn failed: {e}")
            raise StartFailed(str(e))

        with self._lock:
            cancelled = self._generation != generation
            if not cancelled:
                self._process = proc
                self._state = SupervisorState.RUNNING

        reader = threading.Thread(
            target=self._watch,
            args=(proc,),
            daemon=True,
            name=f"shadowpilot-proxy-{proc.pid}",
        )
        reader.start()

        if cancelled:
            logger.info(f"Proxy start cancelled, stopping pid {proc.pid}")
            self._terminate(proc)
            self._log_event(f"cancelled pid={proc.pid}")
            self.status_bus.publish(StatusEvent(ProxyStatus.DISCONNECTED))
            return False

        self._log_event(f"started pid={proc.pid} server={config.server}:{config.server_port}")
        return True

    def stop(self) -> None:
        """Terminate the running process, if any. Idempotent, non-blocking."""
        with self._lock:
            proc = self._process
            if proc is None:
                if self._state == SupervisorState.STARTING:
                    # start() sees the new generation once Popen returns
                    self._generation += 1
                    self._config = None
                    self._state = SupervisorState.STOPPED
                return
            self._state = SupervisorState.STOPPING
            self._process = None
            self._config = None
            self._generation += 1

        self._terminate(proc)

        with self._lock:
            if self._state == SupervisorState.STOPPING:
                self._state = SupervisorState.STOPPED

        logger.info("Proxy stopped")
        self._log_event(f"stopped pid={proc.pid}")
        self.status_bus.publish(StatusEvent(ProxyStatus.DISCONNECTED))

    # ── Output handling ──────────────────────────────────────────────────

    def handle_line(self, line: str) -> None:
        """Parse one output line and fan it out to the observers."""
        level, message = parse_log_line(line)
        logger.log(level.logging_level, f"[proxy] {message}")

        for cb in list(self._log_callbacks):
            try:
                cb(level, message)
            except Exception as e:
                logger.debug(f"Log callback error: {e}")

        if STATISTICS_MARKER in message:
            upload, download = parse_traffic_statistics(line)
            self.statistics.ingest(upload, download)
            for cb in list(self._stats_callbacks):
                try:
                    cb(upload, download)
                except Exception as e:
                    logger.debug(f"Statistics callback error: {e}")

    def _watch(self, proc: subprocess.Popen) -> None:
        """Reader loop for one process; handles its termination."""
        try:
            if proc.stdout is not None:
                for raw in proc.stdout:
                    line = raw.rstrip("\r\n")
                    if line.strip():
                        self.handle_line(line)
        except (OSError, ValueError) as e:
            logger.debug(f"Proxy output stream closed: {e}")
        finally:
            try:
                if proc.stdout is not None:
                    proc.stdout.close()
            except OSError as e:
                logger.debug(f"Cannot close proxy output: {e}")

        code = proc.wait()
        self._on_exit(proc, code)

    def _on_exit(self, proc: subprocess.Popen, code: int) -> None:
        message = f"Process terminated with status: {code}"
        logger.info(message)
        for cb in list(self._log_callbacks):
            try:
                cb(LogLevel.INFO, message)
            except Exception as e:
                logger.debug(f"Log callback error: {e}")

        with self._lock:
            # stop() already handled this process, or a new one replaced it
            if self._process is not proc:
                return
            self._process = None
            self._config = None
            self._state = SupervisorState.STOPPED

        self._log_event(f"exited pid={proc.pid} rc={code}")
        self.status_bus.publish(StatusEvent(ProxyStatus.DISCONNECTED))

    # ── Helpers ──────────────────────────────────────────────────────────

    def _terminate(self, proc: subprocess.Popen) -> None:
        """Ask the process to exit. Does not wait for it to be reaped."""
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
        except (ProcessLookupError, PermissionError, OSError) as e:
            logger.debug(f"Terminate failed for pid {proc.pid}: {e}")

    def _log_event(self, text: str) -> None:
        """Append a lifecycle record to the supervisor log file."""
        if self.log_file is None:
            return
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a") as f:
                ts = time.strftime("%Y-%m-%d %H:%M:%S")
                f.write(f"[{ts}] {text}\n")
        except OSError as e:
            logger.debug(f"Cannot write supervisor log: {e}")

    def get_status(self) -> dict:
        counters = self.statistics.snapshot()
        config = self._config
        return {
            "state": self._state.value,
            "failure_reason": self.failure_reason,
            "pid": self.pid,
            "server": f"{config.server}:{config.server_port}" if config else None,
            "local": f"{config.local_address}:{config.local_port}" if config else None,
            "upload_bytes": counters.upload_bytes,
            "download_bytes": counters.download_bytes,
        }
