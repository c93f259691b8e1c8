"""Tests for the ShadowPilot message channel and extension bridge."""

from types import SimpleNamespace

import pytest

from shadowpilot.core.channel import (
    PROXY_STATUS,
    TRAFFIC_REQUEST,
    TRAFFIC_UPDATE,
    VPN_CONFIG,
    ExtensionBridge,
    LocalMessageBus,
    MessageBus,
)
from shadowpilot.core.dispatch import SerialDispatcher
from shadowpilot.core.errors import BinaryNotFound
from shadowpilot.core.rules import RoutingMode
from shadowpilot.core.statistics import TrafficCounters

CONFIG_PAYLOAD = {
    "server": "203.0.113.7",
    "serverPort": "8388",
    "password": "s3cret",
    "method": "aes-256-gcm",
    "mode": "blacklist",
}


class FakeController:
    def __init__(self):
        self.supervisor = SimpleNamespace(current_config=None)
        self.started = []
        self.stops = 0
        self.fail_with = None

    def start(self, config):
        if self.fail_with is not None:
            raise self.fail_with
        self.started.append(config)
        self.supervisor.current_config = config

    def stop(self):
        self.stops += 1
        self.supervisor.current_config = None

    def traffic(self):
        return TrafficCounters(upload_bytes=1024, download_bytes=4096)


@pytest.fixture
def bus():
    return LocalMessageBus()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def bridge(bus, controller):
    b = ExtensionBridge(bus, controller)
    b.attach()
    return b


@pytest.fixture
def replies(bus):
    received = {}
    bus.listen(PROXY_STATUS, lambda payload: received.setdefault(PROXY_STATUS, []).append(payload))
    bus.listen(TRAFFIC_UPDATE, lambda payload: received.setdefault(TRAFFIC_UPDATE, []).append(payload))
    return received


class TestLocalMessageBus:
    def test_is_a_message_bus(self, bus):
        assert isinstance(bus, MessageBus)

    def test_listen_and_pass(self, bus):
        seen = []
        bus.listen("ping", seen.append)
        bus.pass_message("ping", {"n": 1})
        bus.pass_message("other", {"n": 2})
        assert seen == [{"n": 1}]
        assert bus.last_message("other") == {"n": 2}

    def test_stop_listening(self, bus):
        seen = []
        bus.listen("ping", seen.append)
        bus.stop_listening("ping")
        bus.pass_message("ping")
        assert seen == []

    def test_serial_dispatcher_keeps_order(self):
        dispatcher = SerialDispatcher()
        try:
            bus = LocalMessageBus(dispatcher)
            seen = []
            bus.listen("n", seen.append)
            for i in range(20):
                bus.pass_message("n", {"i": i})
            assert dispatcher.drain(timeout=2)
        finally:
            dispatcher.close()
        assert [p["i"] for p in seen] == list(range(20))


class TestExtensionBridge:
    def test_vpn_config_starts_session(self, bus, bridge, controller, replies):
        bus.pass_message(VPN_CONFIG, CONFIG_PAYLOAD)
        assert len(controller.started) == 1
        config = controller.started[0]
        assert config.server_port == 8388
        assert config.mode == RoutingMode.BLACKLIST
        assert PROXY_STATUS not in replies

    def test_new_config_replaces_running_session(self, bus, bridge, controller):
        bus.pass_message(VPN_CONFIG, CONFIG_PAYLOAD)
        bus.pass_message(VPN_CONFIG, dict(CONFIG_PAYLOAD, server="198.51.100.1"))
        assert controller.stops == 1
        assert controller.supervisor.current_config.server == "198.51.100.1"

    def test_invalid_config_reports_error(self, bus, bridge, controller, replies):
        bus.pass_message(VPN_CONFIG, {"server": "203.0.113.7"})
        assert controller.started == []
        assert "serverPort" in replies[PROXY_STATUS][0]["error"]

    def test_empty_config_reports_error(self, bus, bridge, replies):
        bus.pass_message(VPN_CONFIG, None)
        assert replies[PROXY_STATUS] == [{"error": "empty configuration"}]

    @pytest.mark.parametrize("payload", [["203.0.113.7", 8388], "server=203.0.113.7"])
    def test_non_mapping_config_reports_error(self, bus, bridge, controller, replies, payload):
        bus.pass_message(VPN_CONFIG, payload)
        assert controller.started == []
        assert replies[PROXY_STATUS] == [{"error": "configuration must be an object"}]

    def test_string_flags_in_pushed_config(self, bus, bridge, controller):
        bus.pass_message(VPN_CONFIG, dict(CONFIG_PAYLOAD, enableUDP="false", enableTLS="0"))
        assert controller.started[0].enable_udp is False
        assert controller.started[0].enable_tls is False

    def test_start_failure_reports_error(self, bus, bridge, controller, replies):
        controller.fail_with = BinaryNotFound("/opt/sslocal")
        bus.pass_message(VPN_CONFIG, CONFIG_PAYLOAD)
        assert "/opt/sslocal" in replies[PROXY_STATUS][0]["error"]

    def test_traffic_request(self, bus, bridge, replies):
        bus.pass_message(TRAFFIC_REQUEST)
        assert replies[TRAFFIC_UPDATE] == [{"upload": 1024, "download": 4096}]

    def test_detach(self, bus, bridge, replies):
        bridge.detach()
        bus.pass_message(TRAFFIC_REQUEST)
        assert TRAFFIC_UPDATE not in replies
