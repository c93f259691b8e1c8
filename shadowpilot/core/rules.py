"""
ShadowPilot Routing Rules
=========================
Rule-based routing engine deciding, per destination, whether a connection
goes through the proxy, goes direct, or is rejected.

Rules come in two ordered lists: built-in rules (read-only, loaded once) and
user rules (mutable, persisted). Built-in rules always take precedence and the
first matching rule wins.

Decision table (``should_proxy``):

    ============  =========  =========  ================
    match         whitelist  blacklist  global
    ============  =========  =========  ================
    reject        False      False      True (no check)
    proxy         True       True       True
    direct        False      continue   True
    no match      True       False      True
    ============  =========  =========  ================

The same table drives the dispatcher in the generated PAC script.

Persisted rule format (JSON array)::

    [{"type": "domain", "action": "proxy", "value": "google.com",
      "description": "Google"}]

``type`` is one of ``domain``, ``ip``, ``keyword``, ``useragent``.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from shadowpilot.core.errors import IndexOutOfRange

logger = logging.getLogger(__name__)


# ── Enums ────────────────────────────────────────────────────────────────────

class RuleKind(str, Enum):
    DOMAIN = "domain"
    IP_RANGE = "ip"
    KEYWORD = "keyword"
    USER_AGENT = "useragent"

    @classmethod
    def from_str(cls, value: str) -> "RuleKind":
        normalized = value.strip().lower().replace("-", "").replace("_", "")
        aliases = {"iprange": "ip", "ipcidr": "ip"}
        return cls(aliases.get(normalized, normalized))


class RuleAction(str, Enum):
    PROXY = "proxy"
    DIRECT = "direct"
    REJECT = "reject"

    @classmethod
    def from_str(cls, value: str) -> "RuleAction":
        return cls(value.strip().lower())


class RoutingMode(str, Enum):
    GLOBAL = "global"
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"

    @classmethod
    def from_str(cls, value: str) -> "RoutingMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.WHITELIST


# ── Rule ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProxyRule:
    """A single routing rule: what to match and what to do with it."""
    kind: RuleKind
    value: str
    action: RuleAction
    description: Optional[str] = None

    def matches(self, host: str, url: str, cidr: bool = False) -> bool:
        """Check this rule's predicate against a destination."""
        if self.kind == RuleKind.DOMAIN:
            return host.endswith(self.value)
        if self.kind == RuleKind.IP_RANGE:
            if host == self.value:
                return True
            return cidr and _in_network(host, self.value)
        if self.kind == RuleKind.KEYWORD:
            return self.value in url
        # User-Agent rules need request headers, which are not available here
        return False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.kind.value,
            "action": self.action.value,
            "value": self.value,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ProxyRule"]:
        """Parse a persisted rule. Returns None for malformed entries."""
        kind, action, value = data.get("type"), data.get("action"), data.get("value")
        if not isinstance(kind, str) or not isinstance(action, str) or not isinstance(value, str):
            return None
        try:
            rule_kind = RuleKind(kind)
            rule_action = RuleAction(action)
        except ValueError:
            return None
        description = data.get("description")
        return cls(
            kind=rule_kind,
            value=value,
            action=rule_action,
            description=description if isinstance(description, str) else None,
        )

    def get_summary(self) -> str:
        desc = f" ({self.description})" if self.description else ""
        return f"{self.kind.value}:{self.value} → {self.action.value}{desc}"


def _in_network(host: str, value: str) -> bool:
    try:
        return ipaddress.ip_address(host) in ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False


# ── Rule files ───────────────────────────────────────────────────────────────

FALLBACK_RULES: List[ProxyRule] = [
    ProxyRule(RuleKind.DOMAIN, "google.com", RuleAction.PROXY, "Google"),
    ProxyRule(RuleKind.DOMAIN, "facebook.com", RuleAction.PROXY, "Facebook"),
    ProxyRule(RuleKind.DOMAIN, "twitter.com", RuleAction.PROXY, "Twitter"),
    ProxyRule(RuleKind.DOMAIN, "github.com", RuleAction.PROXY, "GitHub"),
    ProxyRule(RuleKind.DOMAIN, "baidu.com", RuleAction.DIRECT, "Baidu"),
    ProxyRule(RuleKind.DOMAIN, "qq.com", RuleAction.DIRECT, "Tencent"),
    ProxyRule(RuleKind.IP_RANGE, "192.168.0.0/16", RuleAction.DIRECT, "LAN"),
    ProxyRule(RuleKind.KEYWORD, "adware", RuleAction.REJECT, "Adware"),
]


def parse_rules(data: Any) -> List[ProxyRule]:
    """Parse a decoded JSON rule array, skipping malformed entries."""
    if not isinstance(data, list):
        raise ValueError("rule file must contain a JSON array")
    rules: List[ProxyRule] = []
    for i, entry in enumerate(data):
        rule = ProxyRule.from_dict(entry) if isinstance(entry, dict) else None
        if rule is None:
            logger.warning(f"Skipping malformed rule #{i}: {entry!r}")
            continue
        rules.append(rule)
    return rules


def load_rules_file(path: Path) -> List[ProxyRule]:
    """Read and parse a JSON rule file. Raises OSError/ValueError on failure."""
    with open(path, encoding="utf-8") as f:
        return parse_rules(json.load(f))


def load_builtin_rules(path: Optional[Path] = None) -> List[ProxyRule]:
    """Load built-in rules, falling back to the fixed default set."""
    if path is not None:
        try:
            return load_rules_file(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot load built-in rules from {path}: {e}; using defaults")
    return list(FALLBACK_RULES)


# ── Stores ───────────────────────────────────────────────────────────────────

class MemoryRuleStore:
    """User rule store that keeps everything in memory."""

    def __init__(self, rules: Optional[List[ProxyRule]] = None):
        self.rules: List[ProxyRule] = list(rules or [])
        self.save_count = 0

    def load(self) -> List[ProxyRule]:
        return list(self.rules)

    def save(self, rules: List[ProxyRule]) -> None:
        self.rules = list(rules)
        self.save_count += 1


class JsonRuleStore:
    """User rules persisted as a pretty-printed JSON array.

    When the user file does not exist yet and a template is given, the
    template is loaded and copied to the user path.
    """

    def __init__(self, path: Path, template: Optional[Path] = None):
        self.path = Path(path)
        self.template = Path(template) if template else None

    def load(self) -> List[ProxyRule]:
        if self.path.exists():
            try:
                return load_rules_file(self.path)
            except (OSError, ValueError) as e:
                logger.warning(f"Cannot read user rules {self.path}: {e}")
                return []

        if self.template and self.template.exists():
            try:
                rules = load_rules_file(self.template)
            except (OSError, ValueError) as e:
                logger.warning(f"Cannot read rule template {self.template}: {e}")
                return []
            self.save(rules)
            return rules
        return []

    def save(self, rules: List[ProxyRule]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in rules], f, indent=2, ensure_ascii=False)


# ── Engine ───────────────────────────────────────────────────────────────────

_ACTION_LISTS = {
    RuleAction.DIRECT: "directList",
    RuleAction.PROXY: "proxyList",
    RuleAction.REJECT: "rejectList",
}

_PAC_DISPATCHER = """
    // Rule matching: '*...*' entries are URL globs, others match the host
    function checkRules(rules) {
        for (var i = 0; i < rules.length; i++) {
            var rule = rules[i];
            if (rule.charAt(0) === '*') {
                if (shExpMatch(url, rule)) {
                    return true;
                }
            } else if (host === rule || dnsDomainIs(host, rule)) {
                return true;
            }
        }
        return false;
    }

    if (mode === 'global') {
        return proxy;
    }

    if (checkRules(rejectList)) {
        return "REJECT";
    }

    if (mode === 'whitelist') {
        if (checkRules(directList)) {
            return "DIRECT";
        }
        return proxy;
    }

    if (mode === 'blacklist') {
        if (checkRules(proxyList)) {
            return proxy;
        }
        return "DIRECT";
    }

    return "DIRECT";
}
"""


class RuleEngine:
    """
    Answers "should this destination be proxied?" and renders the same rule
    set as a PAC script.

    Thread-safe: user rule mutation and lookups may happen from different
    threads.
    """

    def __init__(
        self,
        builtin_rules: Optional[List[ProxyRule]] = None,
        store: Optional[Any] = None,
        mode: RoutingMode = RoutingMode.WHITELIST,
        cidr_matching: bool = False,
        proxy_address: str = "127.0.0.1",
        proxy_port: int = 1080,
    ):
        self._lock = threading.Lock()
        self._rules: List[ProxyRule] = list(builtin_rules) if builtin_rules is not None else list(FALLBACK_RULES)
        self.store = store if store is not None else MemoryRuleStore()
        self._user_rules: List[ProxyRule] = list(self.store.load())
        self.mode = mode
        self.cidr_matching = cidr_matching
        self.proxy_address = proxy_address
        self.proxy_port = proxy_port

    # ── Rule lists ───────────────────────────────────────────────────────

    @property
    def rules(self) -> List[ProxyRule]:
        """Built-in rules (copy)."""
        return list(self._rules)

    @property
    def user_rules(self) -> List[ProxyRule]:
        """User rules in priority order (copy)."""
        with self._lock:
            return list(self._user_rules)

    def all_rules(self) -> List[ProxyRule]:
        with self._lock:
            return self._rules + self._user_rules

    def add_user_rule(self, rule: ProxyRule) -> None:
        """Append a user rule (lowest priority) and persist the list."""
        with self._lock:
            self._user_rules.append(rule)
            snapshot = list(self._user_rules)
        self.store.save(snapshot)
        logger.info(f"Added user rule: {rule.get_summary()}")

    def remove_user_rule(self, index: int) -> ProxyRule:
        """Remove and return the user rule at ``index``; persist the list."""
        with self._lock:
            if index < 0 or index >= len(self._user_rules):
                raise IndexOutOfRange(index, len(self._user_rules))
            removed = self._user_rules.pop(index)
            snapshot = list(self._user_rules)
        self.store.save(snapshot)
        logger.info(f"Removed user rule #{index}: {removed.get_summary()}")
        return removed

    # ── Decisions ────────────────────────────────────────────────────────

    def find_match(self, host: str, url: str) -> Optional[ProxyRule]:
        """First rule (built-in, then user) whose predicate matches."""
        for rule in self.all_rules():
            if rule.matches(host, url, cidr=self.cidr_matching):
                return rule
        return None

    def should_proxy(self, host: str, url: str) -> bool:
        """Decide whether a connection to ``host`` for ``url`` is proxied."""
        mode = self.mode
        if mode == RoutingMode.GLOBAL:
            return True

        for rule in self.all_rules():
            if not rule.matches(host, url, cidr=self.cidr_matching):
                continue
            if rule.action == RuleAction.REJECT:
                return False
            if rule.action == RuleAction.PROXY:
                return True
            # direct: terminal under whitelist, redundant under blacklist
            if mode == RoutingMode.WHITELIST:
                return False

        return mode == RoutingMode.WHITELIST

    def should_proxy_url(self, url: str) -> bool:
        """Convenience wrapper extracting the host from a full URL."""
        parsed = urllib.parse.urlparse(url if "://" in url else f"http://{url}")
        return self.should_proxy(parsed.hostname or "", url)

    # ── PAC ──────────────────────────────────────────────────────────────

    def generate_pac(self) -> str:
        """Render the rule set and mode as a ``FindProxyForURL`` script."""
        endpoint = f"{self.proxy_address}:{self.proxy_port}"
        lines = [
            "function FindProxyForURL(url, host) {",
            "    // Proxy server",
            f'    var proxy = "SOCKS5 {endpoint}; SOCKS {endpoint}; DIRECT;";',
            "",
            "    // Routing mode",
            f'    var mode = "{self.mode.value}";',
            "",
            "    var directList = [];",
            "    var proxyList = [];",
            "    var rejectList = [];",
            "",
        ]

        for rule in self.all_rules():
            value = _js_escape(rule.value)
            if rule.kind == RuleKind.USER_AGENT:
                lines.extend([
                    "    if (typeof navigator !== 'undefined' && "
                    f"navigator.userAgent.indexOf('{value}') !== -1) {{",
                    "        return proxy;",
                    "    }",
                ])
                continue
            if rule.kind == RuleKind.KEYWORD:
                value = f"*{value}*"
            lines.append(f"    {_ACTION_LISTS[rule.action]}.push('{value}');")

        return "\n".join(lines) + "\n" + _PAC_DISPATCHER


def _js_escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
