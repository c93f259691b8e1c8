"""
ShadowPilot Message Channel
===========================
Named-message bus between a host application and the background side that
runs the proxy, plus the bridge implementing the background side.

Messages:
  • ``vpn_config``      host → bridge   configuration dict, starts a session
  • ``traffic_request`` host → bridge   asks for the cumulative counters
  • ``traffic_update``  bridge → host   ``{"upload": n, "download": n}``
  • ``proxy_status``    bridge → host   ``{"error": detail}`` on failure
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from shadowpilot.core.dispatch import InlineDispatcher
from shadowpilot.core.errors import ShadowPilotError
from shadowpilot.core.profile import ProxyConfig

logger = logging.getLogger(__name__)

VPN_CONFIG = "vpn_config"
TRAFFIC_REQUEST = "traffic_request"
TRAFFIC_UPDATE = "traffic_update"
PROXY_STATUS = "proxy_status"

MessageCallback = Callable[[Optional[Dict[str, Any]]], None]


class MessageBus(ABC):
    """Named-message transport between the host and the background side."""

    @abstractmethod
    def listen(self, identifier: str, callback: MessageCallback) -> None:
        """Register ``callback`` for messages passed under ``identifier``."""

    @abstractmethod
    def stop_listening(self, identifier: str) -> None:
        """Drop every listener registered for ``identifier``."""

    @abstractmethod
    def pass_message(self, identifier: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Deliver ``payload`` to the listeners of ``identifier``."""


class LocalMessageBus(MessageBus):
    """In-process message bus; listeners run on the given dispatcher."""

    def __init__(self, dispatcher: Optional[Any] = None):
        self.dispatcher = dispatcher or InlineDispatcher()
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[MessageCallback]] = {}
        self._last: Dict[str, Optional[Dict[str, Any]]] = {}

    def listen(self, identifier: str, callback: MessageCallback) -> None:
        with self._lock:
            self._listeners.setdefault(identifier, []).append(callback)

    def stop_listening(self, identifier: str) -> None:
        with self._lock:
            self._listeners.pop(identifier, None)

    def pass_message(self, identifier: str, payload: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._last[identifier] = payload
            listeners = list(self._listeners.get(identifier, []))
        if not listeners:
            logger.debug(f"No listener for message '{identifier}'")
        for cb in listeners:
            self.dispatcher.submit(cb, payload)

    def last_message(self, identifier: str) -> Optional[Dict[str, Any]]:
        """Most recent payload passed under ``identifier``."""
        with self._lock:
            return self._last.get(identifier)


class ExtensionBridge:
    """
    Background side of the channel: applies pushed configurations and answers
    traffic requests using the controller.
    """

    def __init__(self, bus: MessageBus, controller: Any):
        self.bus = bus
        self.controller = controller

    def attach(self) -> None:
        self.bus.listen(VPN_CONFIG, self._on_vpn_config)
        self.bus.listen(TRAFFIC_REQUEST, self._on_traffic_request)

    def detach(self) -> None:
        self.bus.stop_listening(VPN_CONFIG)
        self.bus.stop_listening(TRAFFIC_REQUEST)

    def _on_vpn_config(self, payload: Optional[Dict[str, Any]]) -> None:
        if not payload:
            self._report_error("empty configuration")
            return
        if not isinstance(payload, dict):
            self._report_error("configuration must be an object")
            return
        try:
            config = ProxyConfig.from_dict(payload)
            if self.controller.supervisor.current_config is not None:
                self.controller.stop()
            self.controller.start(config)
        except ShadowPilotError as e:
            logger.warning(f"Cannot apply pushed configuration: {e}")
            self._report_error(str(e))
            return
        logger.info(f"Applied pushed configuration for {config.server}:{config.server_port}")

    def _on_traffic_request(self, payload: Optional[Dict[str, Any]]) -> None:
        counters = self.controller.traffic()
        self.bus.pass_message(TRAFFIC_UPDATE, {
            "upload": counters.upload_bytes,
            "download": counters.download_bytes,
        })

    def _report_error(self, detail: str) -> None:
        self.bus.pass_message(PROXY_STATUS, {"error": detail})
