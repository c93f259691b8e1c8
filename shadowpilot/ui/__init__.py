"""
ShadowPilot Terminal UI
=======================
Rich terminal output: banner, status panels, rule/profile tables and the
live proxy log feed.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.theme import Theme

from shadowpilot import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

SHADOWPILOT_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "subtitle": "dim",
    "proxy": "bold magenta",
    "direct": "bold cyan",
    "reject": "bold red",
    "dim": "dim white",
})

console = Console(theme=SHADOWPILOT_THEME)

# ── Banner ───────────────────────────────────────────────────────────────────

BANNER_SMALL = (
    f"[bold bright_green]⛵ ShadowPilot[/] [dim]v{__version__}[/] "
    "[dim]|[/] [bold bright_cyan]Proxy client control plane[/]"
)

_LEVEL_STYLES = {
    "ERROR": "error",
    "WARN": "warning",
    "INFO": "info",
    "DEBUG": "dim",
    "TRACE": "dim",
}

_STATUS_STYLES = {
    "connecting": "warning",
    "connected": "success",
    "disconnected": "dim",
    "error": "error",
}


def show_banner() -> None:
    """Display the ShadowPilot banner."""
    console.print(BANNER_SMALL)


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")


def print_proxy_log(level: str, message: str) -> None:
    """Print one parsed line of proxy output."""
    style = _LEVEL_STYLES.get(level, "info")
    console.print(f"[{style}]{level:<5}[/] {escape(message)}", highlight=False)


def print_status(status: str, detail: str = "") -> None:
    style = _STATUS_STYLES.get(status, "info")
    suffix = f" [dim]{escape(detail)}[/]" if detail else ""
    console.print(f"[{style}]● proxy {status}[/]{suffix}")


def print_decision(url: str, proxied: bool, rule: Optional[str] = None) -> None:
    verdict = "[proxy]PROXY[/]" if proxied else "[direct]DIRECT/BLOCK[/]"
    console.print(f"{verdict}  {escape(url)}")
    console.print(f"  [dim]matched: {escape(rule or 'no rule (mode default)')}[/]")


# ── Tables ───────────────────────────────────────────────────────────────────

def show_rules_table(rules: List[Any], title: str, numbered: bool = True) -> None:
    """Display routing rules in priority order."""
    table = Table(title=title, show_lines=False)
    if numbered:
        table.add_column("#", style="dim", justify="right")
    table.add_column("Type", style="bold")
    table.add_column("Value")
    table.add_column("Action")
    table.add_column("Description", style="dim")

    for i, rule in enumerate(rules):
        action = rule.action.value
        row = [rule.kind.value, escape(rule.value), f"[{action}]{action}[/]", escape(rule.description or "—")]
        if numbered:
            row.insert(0, str(i))
        table.add_row(*row)

    console.print(table)
    if not rules:
        console.print("[dim]  (no rules)[/]")


def show_profiles_table(profiles: Dict[str, Any], selected: Optional[str]) -> None:
    table = Table(title="Profiles", show_lines=False)
    table.add_column("Name", style="bold")
    table.add_column("Server")
    table.add_column("Method")
    table.add_column("Local")
    table.add_column("Mode")

    for name, cfg in sorted(profiles.items()):
        marker = " [success]◄[/]" if name == selected else ""
        table.add_row(
            f"{name}{marker}",
            f"{cfg.server}:{cfg.server_port}",
            cfg.method_name,
            f"{cfg.local_address}:{cfg.local_port}",
            cfg.mode.value,
        )
    console.print(table)


def show_config_status(config: Dict[str, Any]) -> None:
    """Display configuration status."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    for key, value in config.items():
        table.add_row(key, str(value))

    console.print(Panel(table, title="[title]Configuration[/]", border_style="green"))


def show_pac(script: str) -> None:
    console.print(Syntax(script, "javascript", theme="monokai", line_numbers=False))


def format_bytes(n: int) -> str:
    value = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{n}B"
