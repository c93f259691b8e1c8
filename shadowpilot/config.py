"""
ShadowPilot Configuration Management
====================================
Handles config loading, platform-specific paths and locating the proxy
executable.
"""

from __future__ import annotations

import copy
import logging
import os
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir

logger = logging.getLogger(__name__)

APP_NAME = "shadowpilot"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
DATA_DIR = Path(user_data_dir(APP_NAME))
LOGS_DIR = DATA_DIR / "logs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"
RULES_FILE = DATA_DIR / "user_rules.json"
PROFILES_FILE = DATA_DIR / "profiles.json"

RESOURCES_DIR = Path(__file__).parent / "resources"
BUNDLED_BINARY = RESOURCES_DIR / "bin" / ("sslocal.exe" if platform.system() == "Windows" else "sslocal")
DEFAULT_RULES_FILE = RESOURCES_DIR / "default_rules.json"
USER_RULES_TEMPLATE = RESOURCES_DIR / "user_rules.json"


def ensure_dirs() -> None:
    """Create all required directories."""
    for d in (CONFIG_DIR, DATA_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "proxy": {
        "binary": "",
        "log_to_file": True,
    },
    "routing": {
        "mode": "whitelist",
        "pac_address": "127.0.0.1",
        "pac_port": 1080,
        "cidr_matching": False,
        "builtin_rules": "",
    },
    "network": {
        "auto_reconnect": True,
        "reconnect_delay": 5.0,
        "poll_interval": 2.0,
    },
    "ui": {
        "show_banner": True,
        "verbose": False,
    },
}


@dataclass
class ProxyRuntimeConfig:
    binary: str = ""
    log_to_file: bool = True


@dataclass
class RoutingConfig:
    mode: str = "whitelist"
    pac_address: str = "127.0.0.1"
    pac_port: int = 1080
    cidr_matching: bool = False
    builtin_rules: str = ""


@dataclass
class NetworkConfig:
    auto_reconnect: bool = True
    reconnect_delay: float = 5.0
    poll_interval: float = 2.0


@dataclass
class UIConfig:
    show_banner: bool = True
    verbose: bool = False


@dataclass
class ShadowPilotConfig:
    proxy: ProxyRuntimeConfig = field(default_factory=ProxyRuntimeConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def load_config(path: Optional[Path] = None) -> ShadowPilotConfig:
    """Load configuration from disk, env vars, and defaults."""
    ensure_dirs()
    config_file = path or CONFIG_FILE
    raw: Dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}

    # Merge with defaults
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), raw)

    # Env-var overrides
    if os.environ.get("SHADOWPILOT_BINARY"):
        merged["proxy"]["binary"] = os.environ["SHADOWPILOT_BINARY"]
    if os.environ.get("SHADOWPILOT_MODE"):
        merged["routing"]["mode"] = os.environ["SHADOWPILOT_MODE"].lower()
    if os.environ.get("SHADOWPILOT_AUTO_RECONNECT"):
        merged["network"]["auto_reconnect"] = _env_bool(os.environ["SHADOWPILOT_AUTO_RECONNECT"])
    if os.environ.get("SHADOWPILOT_RECONNECT_DELAY"):
        try:
            merged["network"]["reconnect_delay"] = float(os.environ["SHADOWPILOT_RECONNECT_DELAY"])
        except ValueError:
            logger.warning("Ignoring non-numeric SHADOWPILOT_RECONNECT_DELAY")

    cfg = ShadowPilotConfig(
        proxy=ProxyRuntimeConfig(**merged.get("proxy", {})),
        routing=RoutingConfig(**merged.get("routing", {})),
        network=NetworkConfig(**merged.get("network", {})),
        ui=UIConfig(**merged.get("ui", {})),
    )
    return cfg


def save_config(cfg: ShadowPilotConfig, path: Optional[Path] = None) -> None:
    """Persist current configuration to disk."""
    ensure_dirs()
    data = {
        "proxy": {
            "binary": cfg.proxy.binary,
            "log_to_file": cfg.proxy.log_to_file,
        },
        "routing": {
            "mode": cfg.routing.mode,
            "pac_address": cfg.routing.pac_address,
            "pac_port": cfg.routing.pac_port,
            "cidr_matching": cfg.routing.cidr_matching,
            "builtin_rules": cfg.routing.builtin_rules,
        },
        "network": {
            "auto_reconnect": cfg.network.auto_reconnect,
            "reconnect_delay": cfg.network.reconnect_delay,
            "poll_interval": cfg.network.poll_interval,
        },
        "ui": {
            "show_banner": cfg.ui.show_banner,
            "verbose": cfg.ui.verbose,
        },
    }
    with open(path or CONFIG_FILE, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ── binary & platform ────────────────────────────────────────────────────────

def resolve_binary_path(cfg: ShadowPilotConfig) -> str:
    """Configured binary, else the bundled one, else ``sslocal`` on PATH.

    Returns the bundled location when nothing exists, so the supervisor can
    report it in ``BinaryNotFound``.
    """
    if cfg.proxy.binary:
        return os.path.expanduser(cfg.proxy.binary)
    if BUNDLED_BINARY.exists():
        return str(BUNDLED_BINARY)
    found = shutil.which("sslocal")
    return found or str(BUNDLED_BINARY)


def detect_platform() -> Dict[str, str]:
    """Return platform information."""
    return {
        "system": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "python": platform.python_version(),
    }
