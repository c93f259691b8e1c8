"""
ShadowPilot Controller
======================
Top-level orchestrator. Builds and owns one rule engine, supervisor,
reachability monitor and callback dispatcher, and wires them together.
Nothing in ShadowPilot is a process-wide singleton: everything hangs off a
``ProxyController`` instance.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from shadowpilot.config import (
    DEFAULT_RULES_FILE,
    LOGS_DIR,
    RULES_FILE,
    USER_RULES_TEMPLATE,
    ShadowPilotConfig,
    resolve_binary_path,
)
from shadowpilot.core.channel import ExtensionBridge, LocalMessageBus, MessageBus
from shadowpilot.core.dispatch import SerialDispatcher, StatusBus
from shadowpilot.core.errors import AlreadyRunning, ShadowPilotError
from shadowpilot.core.profile import ProxyConfig
from shadowpilot.core.reachability import NetworkStatus, PathWatcher, ReachabilityMonitor
from shadowpilot.core.rules import JsonRuleStore, RoutingMode, RuleEngine, load_builtin_rules
from shadowpilot.core.statistics import TrafficCounters
from shadowpilot.core.supervisor import LogLevel, ProxyStatus, ProxySupervisor, StatusEvent, SupervisorState

logger = logging.getLogger(__name__)


def build_rule_engine(cfg: ShadowPilotConfig, rules_file: Optional[Path] = None) -> RuleEngine:
    """Rule engine with bundled built-ins and the persisted user rules."""
    builtin_path = Path(cfg.routing.builtin_rules) if cfg.routing.builtin_rules else DEFAULT_RULES_FILE
    return RuleEngine(
        builtin_rules=load_builtin_rules(builtin_path),
        store=JsonRuleStore(rules_file or RULES_FILE, template=USER_RULES_TEMPLATE),
        mode=RoutingMode.from_str(cfg.routing.mode),
        cidr_matching=cfg.routing.cidr_matching,
        proxy_address=cfg.routing.pac_address,
        proxy_port=cfg.routing.pac_port,
    )


class ProxyController:
    """Owns the control-plane components of one proxy client."""

    def __init__(
        self,
        rules: RuleEngine,
        supervisor: ProxySupervisor,
        monitor: ReachabilityMonitor,
        dispatcher: Any,
        watcher: Optional[PathWatcher] = None,
    ):
        self.rules = rules
        self.supervisor = supervisor
        self.monitor = monitor
        self.dispatcher = dispatcher
        self.watcher = watcher
        self.bridge: Optional[ExtensionBridge] = None

    @classmethod
    def from_config(
        cls,
        cfg: ShadowPilotConfig,
        rules_file: Optional[Path] = None,
        watch_network: bool = True,
    ) -> "ProxyController":
        """Build a fully wired controller from application settings."""
        dispatcher = SerialDispatcher()
        bus = StatusBus(dispatcher)

        rules = build_rule_engine(cfg, rules_file)
        supervisor = ProxySupervisor(
            resolve_binary_path(cfg),
            status_bus=bus,
            log_file=LOGS_DIR / "supervisor.log" if cfg.proxy.log_to_file else None,
        )
        monitor = ReachabilityMonitor(
            supervisor,
            status_bus=bus,
            dispatcher=dispatcher,
            auto_reconnect=cfg.network.auto_reconnect,
            reconnect_delay=cfg.network.reconnect_delay,
        )
        watcher = PathWatcher(monitor, interval=cfg.network.poll_interval) if watch_network else None
        return cls(rules, supervisor, monitor, dispatcher, watcher)

    # ── Observers ────────────────────────────────────────────────────────

    def on_log(self, callback: Callable[[LogLevel, str], None]) -> None:
        self.supervisor.on_log(callback)

    def on_status(self, callback: Callable[[StatusEvent], None]) -> None:
        self.supervisor.on_status(callback)

    def on_network_status(self, callback: Callable[[NetworkStatus], None]) -> None:
        self.monitor.on_network_status(callback)

    # ── Session ──────────────────────────────────────────────────────────

    def start(self, config: ProxyConfig) -> None:
        """Start a session; the routing mode follows the profile's mode.

        A call made while a session is starting or running raises
        ``AlreadyRunning`` without publishing anything.
        """
        if self.supervisor.state in (SupervisorState.STARTING, SupervisorState.RUNNING):
            raise AlreadyRunning()

        self.supervisor.status_bus.publish(StatusEvent(ProxyStatus.CONNECTING))
        try:
            started = self.supervisor.start(config)
        except ShadowPilotError as e:
            self.supervisor.status_bus.publish(StatusEvent(ProxyStatus.ERROR, str(e)))
            raise
        self.rules.mode = config.mode
        if self.watcher is not None:
            self.watcher.start()
        if not started:
            logger.info("Session start cancelled by a stop request")
            return
        self.supervisor.status_bus.publish(StatusEvent(ProxyStatus.CONNECTED))
        logger.info(f"Session started: {config.server}:{config.server_port} ({config.mode.value})")

    def stop(self) -> None:
        """Stop the session and forget it for auto-reconnection."""
        logger.debug("Stopping session on request")
        self.monitor.forget()
        self.supervisor.stop()

    def shutdown(self) -> None:
        if self.bridge is not None:
            self.bridge.detach()
        self.stop()
        if self.watcher is not None:
            self.watcher.stop()
        self.dispatcher.drain(timeout=2)
        self.dispatcher.close()

    # ── Extension channel ────────────────────────────────────────────────

    def attach_bridge(self, bus: Optional[MessageBus] = None) -> ExtensionBridge:
        """Serve pushed configs and traffic requests arriving on ``bus``.

        Without a bus, an in-process one running on this controller's
        dispatcher is created. A previously attached bridge is detached.
        """
        if self.bridge is not None:
            self.bridge.detach()
        self.bridge = ExtensionBridge(bus or LocalMessageBus(self.dispatcher), self)
        self.bridge.attach()
        return self.bridge

    # ── Routing ──────────────────────────────────────────────────────────

    def should_proxy(self, url: str) -> bool:
        return self.rules.should_proxy_url(url)

    def generate_pac(self) -> str:
        return self.rules.generate_pac()

    # ── Status ───────────────────────────────────────────────────────────

    def traffic(self) -> TrafficCounters:
        return self.supervisor.statistics.snapshot()

    def get_status(self) -> Dict[str, Any]:
        status = self.supervisor.get_status()
        status.update(self.monitor.get_status())
        status["mode"] = self.rules.mode.value
        status["user_rules"] = len(self.rules.user_rules)
        return status
