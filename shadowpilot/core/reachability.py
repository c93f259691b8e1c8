"""
ShadowPilot Network Reachability
================================
Classifies the host's active network path and drives automatic
reconnection of the proxy session.

* Path updates are pushed into ``ReachabilityMonitor.handle_path_update`` by
  a ``PathWatcher`` (psutil based) or by any other event source.
* Observers only hear about real changes: repeated updates that classify to
  the same status are dropped.
* Becoming ``unavailable`` stops the proxy so no local listener stays bound
  on a dead path.
* Becoming reachable again (with ``auto_reconnect``) schedules exactly one
  ``start`` attempt after ``reconnect_delay`` seconds, using the session's
  config. Each attempt carries a token; an attempt whose token is stale
  (newer transition, explicit stop/start since scheduling) does nothing.
"""

from __future__ import annotations

import logging
import platform
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import psutil

from shadowpilot.core.dispatch import InlineDispatcher, StatusBus
from shadowpilot.core.errors import ShadowPilotError
from shadowpilot.core.profile import ProxyConfig
from shadowpilot.core.supervisor import ProxyStatus, StatusEvent, SupervisorState

logger = logging.getLogger(__name__)


# ── Path model ───────────────────────────────────────────────────────────────

class NetworkStatus(str, Enum):
    UNAVAILABLE = "unavailable"
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    UNKNOWN = "unknown"


class InterfaceType(str, Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED = "wired"
    LOOPBACK = "loopback"
    OTHER = "other"


@dataclass(frozen=True)
class NetworkPath:
    """A snapshot of the host's network path."""
    satisfied: bool
    interfaces: FrozenSet[InterfaceType] = field(default_factory=frozenset)

    def uses(self, kind: InterfaceType) -> bool:
        return kind in self.interfaces


def classify_path(path: NetworkPath) -> NetworkStatus:
    """Map a path to a status: unavailable > wifi > cellular > ethernet > unknown."""
    if not path.satisfied:
        return NetworkStatus.UNAVAILABLE
    if path.uses(InterfaceType.WIFI):
        return NetworkStatus.WIFI
    if path.uses(InterfaceType.CELLULAR):
        return NetworkStatus.CELLULAR
    if path.uses(InterfaceType.WIRED):
        return NetworkStatus.ETHERNET
    return NetworkStatus.UNKNOWN


_WIFI_PREFIXES = ("wl", "wifi", "ath", "ra", "wi-fi", "wireless", "airport")
_CELLULAR_PREFIXES = ("wwan", "rmnet", "ppp", "pdp_ip", "ccmni", "cellular", "mobile")
_WIRED_PREFIXES = ("eth", "en", "em", "ethernet", "local area connection")
_LOOPBACK_PREFIXES = ("lo",)


def classify_interface(name: str, system: Optional[str] = None) -> InterfaceType:
    """Guess an interface's type from its OS name."""
    lowered = name.lower()
    system = system or platform.system()

    if lowered.startswith(_LOOPBACK_PREFIXES) and not lowered.startswith("local area"):
        return InterfaceType.LOOPBACK
    # macOS: en0 is the built-in Wi-Fi on laptops
    if system == "Darwin" and lowered == "en0":
        return InterfaceType.WIFI
    if lowered.startswith(_WIFI_PREFIXES):
        return InterfaceType.WIFI
    if lowered.startswith(_CELLULAR_PREFIXES):
        return InterfaceType.CELLULAR
    if lowered.startswith(_WIRED_PREFIXES):
        return InterfaceType.WIRED
    return InterfaceType.OTHER


def sample_network_path() -> NetworkPath:
    """Build a ``NetworkPath`` from the live interface table (psutil)."""
    stats = psutil.net_if_stats()
    addrs = psutil.net_if_addrs()
    kinds = set()
    for name, st in stats.items():
        if not st.isup:
            continue
        kind = classify_interface(name)
        if kind == InterfaceType.LOOPBACK:
            continue
        has_address = any(
            a.family in (socket.AF_INET, socket.AF_INET6) and not str(a.address).startswith("fe80")
            for a in addrs.get(name, [])
        )
        if has_address:
            kinds.add(kind)
    return NetworkPath(satisfied=bool(kinds), interfaces=frozenset(kinds))


# ── Monitor ──────────────────────────────────────────────────────────────────

class ReachabilityMonitor:
    """
    Tracks the current ``NetworkStatus`` and applies the reconnection policy.

    The monitor only reads the supervisor's current config; it acts on the
    session exclusively through ``supervisor.start`` / ``supervisor.stop``.
    """

    def __init__(
        self,
        supervisor: Any,
        status_bus: Optional[StatusBus] = None,
        dispatcher: Optional[Any] = None,
        auto_reconnect: bool = True,
        reconnect_delay: float = 5.0,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.supervisor = supervisor
        self.status_bus = status_bus or supervisor.status_bus
        self.dispatcher = dispatcher or InlineDispatcher()
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._status = NetworkStatus.UNKNOWN
        self._observers: List[Callable[[NetworkStatus], None]] = []
        self._token = 0
        self._pending: List[Any] = []
        # Config of a session this monitor stopped, plus the supervisor
        # generation right after that stop
        self._remembered: Optional[ProxyConfig] = None
        self._remembered_generation = -1
        self.attempts = 0

    @property
    def status(self) -> NetworkStatus:
        return self._status

    @property
    def awaiting_reconnect(self) -> bool:
        """True while a network-stopped session may still be restarted."""
        return self.auto_reconnect and self._session_config() is not None

    def on_network_status(self, callback: Callable[[NetworkStatus], None]) -> None:
        """Register an observer for de-duplicated status changes."""
        self._observers.append(callback)

    # ── Events ───────────────────────────────────────────────────────────

    def handle_path_update(self, path: NetworkPath) -> Optional[NetworkStatus]:
        """Process one platform path event.

        Returns the new status when it changed, None otherwise.
        """
        new_status = classify_path(path)
        with self._lock:
            if new_status == self._status:
                return None
            old_status = self._status
            self._status = new_status
            self._token += 1
            token = self._token

        logger.info(f"Network status: {old_status.value} → {new_status.value}")
        for cb in list(self._observers):
            self.dispatcher.submit(cb, new_status)

        if new_status == NetworkStatus.UNAVAILABLE:
            self._handle_unavailable()
        elif self.auto_reconnect:
            self._schedule_reconnect(token)
        return new_status

    def _handle_unavailable(self) -> None:
        self.cancel_pending()
        config = self.supervisor.current_config
        if config is None:
            return
        logger.info("Network unavailable, stopping proxy")
        self.supervisor.stop()
        with self._lock:
            self._remembered = config
            self._remembered_generation = self.supervisor.generation

    def _session_config(self) -> Optional[ProxyConfig]:
        """Config eligible for reconnection, if any."""
        config = self.supervisor.current_config
        if config is not None:
            return config
        with self._lock:
            if self._remembered is not None and self.supervisor.generation == self._remembered_generation:
                return self._remembered
        return None

    def _schedule_reconnect(self, token: int) -> None:
        config = self._session_config()
        if config is None:
            return
        logger.info(f"Reconnecting in {self.reconnect_delay}s")
        timer = self._timer_factory(
            self.reconnect_delay,
            self._attempt_reconnect,
            args=(config, token, self.supervisor.generation),
        )
        if hasattr(timer, "daemon"):
            timer.daemon = True
        with self._lock:
            self._pending.append(timer)
        timer.start()

    def _attempt_reconnect(self, config: ProxyConfig, token: int, generation: int) -> None:
        with self._lock:
            stale = (
                token != self._token
                or self._status == NetworkStatus.UNAVAILABLE
                or self.supervisor.generation != generation
            )
        if stale:
            logger.debug("Reconnect attempt superseded, skipping")
            return
        if self.supervisor.state in (SupervisorState.STARTING, SupervisorState.RUNNING):
            logger.debug("Proxy already running, skipping reconnect")
            return

        self.attempts += 1
        try:
            started = self.supervisor.start(config)
        except ShadowPilotError as e:
            logger.warning(f"Reconnect failed: {e}")
            self.status_bus.publish(StatusEvent(ProxyStatus.ERROR, str(e)))
            return
        if not started:
            logger.debug("Reconnect cancelled by a stop request")
            return
        with self._lock:
            self._remembered = None
        logger.info("Proxy reconnected")
        self.status_bus.publish(StatusEvent(ProxyStatus.CONNECTED))

    def cancel_pending(self) -> None:
        """Cancel timers that have not fired yet."""
        with self._lock:
            pending, self._pending = self._pending, []
        for timer in pending:
            cancel = getattr(timer, "cancel", None)
            if cancel:
                cancel()

    def forget(self) -> None:
        """Drop the remembered session (explicit user stop)."""
        with self._lock:
            self._remembered = None
            self._token += 1
        self.cancel_pending()

    def get_status(self) -> Dict[str, Any]:
        return {
            "network": self._status.value,
            "auto_reconnect": self.auto_reconnect,
            "reconnect_delay": self.reconnect_delay,
            "remembered_session": self._remembered is not None,
            "reconnect_attempts": self.attempts,
        }


# ── Path watcher ─────────────────────────────────────────────────────────────

class PathWatcher:
    """
    Background thread turning interface-table samples into path events.

    Only samples that differ from the previous one are pushed to the monitor.
    """

    def __init__(
        self,
        monitor: ReachabilityMonitor,
        interval: float = 2.0,
        sampler: Callable[[], NetworkPath] = sample_network_path,
    ):
        self.monitor = monitor
        self.interval = interval
        self.sampler = sampler
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last: Optional[NetworkPath] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="shadowpilot-pathwatch")
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
        self._thread = None

    def poll_once(self) -> Optional[NetworkStatus]:
        try:
            path = self.sampler()
        except (OSError, RuntimeError) as e:
            logger.debug(f"Interface sampling failed: {e}")
            return None
        if path == self._last:
            return None
        self._last = path
        return self.monitor.handle_path_update(path)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.interval)
