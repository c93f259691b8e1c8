"""
ShadowPilot Core Module
"""

from shadowpilot.core.channel import ExtensionBridge, LocalMessageBus, MessageBus
from shadowpilot.core.errors import (
    AlreadyRunning,
    BinaryNotFound,
    IndexOutOfRange,
    InvalidConfiguration,
    ShadowPilotError,
    StartFailed,
)
from shadowpilot.core.profile import EncryptionMethod, ProxyConfig, RoutingStrategy
from shadowpilot.core.reachability import NetworkPath, NetworkStatus, ReachabilityMonitor
from shadowpilot.core.rules import ProxyRule, RoutingMode, RuleAction, RuleEngine, RuleKind
from shadowpilot.core.statistics import TrafficCounters, TrafficStatistics
from shadowpilot.core.supervisor import (
    LogLevel,
    ProxyStatus,
    ProxySupervisor,
    StatusEvent,
    SupervisorState,
)

__all__ = [
    "ExtensionBridge", "LocalMessageBus", "MessageBus",
    "AlreadyRunning", "BinaryNotFound", "IndexOutOfRange", "InvalidConfiguration",
    "ShadowPilotError", "StartFailed",
    "EncryptionMethod", "ProxyConfig", "RoutingStrategy",
    "NetworkPath", "NetworkStatus", "ReachabilityMonitor",
    "ProxyRule", "RoutingMode", "RuleAction", "RuleEngine", "RuleKind",
    "TrafficCounters", "TrafficStatistics",
    "LogLevel", "ProxyStatus", "ProxySupervisor", "StatusEvent", "SupervisorState",
]
