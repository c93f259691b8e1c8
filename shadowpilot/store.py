"""
ShadowPilot Profile Store
=========================
Named proxy configurations persisted as JSON, with one selected profile.

File layout::

    {"configs": {"home": {...ProxyConfig.to_dict()...}}, "selected": "home"}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from shadowpilot.config import PROFILES_FILE
from shadowpilot.core.errors import InvalidConfiguration
from shadowpilot.core.profile import ProxyConfig

logger = logging.getLogger(__name__)


class ProfileStore:
    """Key-value store of ``ProxyConfig`` records by name."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else PROFILES_FILE
        self._configs: Dict[str, ProxyConfig] = {}
        self._selected: Optional[str] = None
        self._load()

    # ── Persistence ──────────────────────────────────────────────────────

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cannot read profiles {self.path}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed profile file {self.path}")
            return

        for name, raw in (data.get("configs") or {}).items():
            try:
                self._configs[name] = ProxyConfig.from_dict(raw)
            except InvalidConfiguration as e:
                logger.warning(f"Skipping profile '{name}': {e}")

        selected = data.get("selected")
        self._selected = selected if selected in self._configs else None

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "configs": {name: cfg.to_dict() for name, cfg in self._configs.items()},
            "selected": self._selected,
        }
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    # ── CRUD ─────────────────────────────────────────────────────────────

    def names(self) -> List[str]:
        return sorted(self._configs)

    def get(self, name: str) -> Optional[ProxyConfig]:
        return self._configs.get(name)

    def add(self, name: str, config: ProxyConfig) -> None:
        """Add or replace a profile."""
        self._configs[name] = config
        self._save()

    def remove(self, name: str) -> bool:
        if name not in self._configs:
            return False
        del self._configs[name]
        if self._selected == name:
            self._selected = None
        self._save()
        return True

    def select(self, name: str) -> Optional[ProxyConfig]:
        config = self._configs.get(name)
        if config is None:
            return None
        self._selected = name
        self._save()
        return config

    @property
    def selected_name(self) -> Optional[str]:
        return self._selected

    @property
    def current(self) -> Optional[ProxyConfig]:
        if self._selected is None:
            return None
        return self._configs.get(self._selected)

    # ── Import / Export ──────────────────────────────────────────────────

    def import_file(self, path: Path) -> List[str]:
        """Import a single profile (named after the file) or a name→profile map."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidConfiguration(f"cannot read {path}: {e}")

        if isinstance(data, dict) and "server" in data:
            self.add(path.stem, ProxyConfig.from_dict(data))
            return [path.stem]

        if isinstance(data, dict) and data and all(isinstance(v, dict) for v in data.values()):
            parsed = {name: ProxyConfig.from_dict(raw) for name, raw in data.items()}
            self._configs.update(parsed)
            self._save()
            return sorted(parsed)

        raise InvalidConfiguration("invalid configuration file format")

    def export(self, name: str, path: Path) -> None:
        config = self._configs.get(name)
        if config is None:
            raise InvalidConfiguration(f"profile '{name}' does not exist")
        _write_json(Path(path), config.to_dict())

    def export_all(self, path: Path) -> None:
        _write_json(Path(path), {name: cfg.to_dict() for name, cfg in self._configs.items()})


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
