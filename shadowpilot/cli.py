"""
ShadowPilot CLI
===============
Command-line interface: run a proxy session in the foreground, inspect
routing decisions, render PAC scripts, and manage rules and profiles.
"""

from __future__ import annotations

import logging
import time
import urllib.parse
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from shadowpilot import __version__
from shadowpilot.config import (
    CONFIG_FILE,
    PROFILES_FILE,
    RULES_FILE,
    detect_platform,
    load_config,
    resolve_binary_path,
)
from shadowpilot.controller import ProxyController, build_rule_engine
from shadowpilot.core.errors import IndexOutOfRange, ShadowPilotError
from shadowpilot.core.profile import EncryptionMethod, ProxyConfig
from shadowpilot.core.reachability import NetworkStatus
from shadowpilot.core.rules import (
    ProxyRule,
    RoutingMode,
    RuleAction,
    RuleEngine,
    RuleKind,
)
from shadowpilot.core.supervisor import LogLevel, StatusEvent, SupervisorState
from shadowpilot.store import ProfileStore
from shadowpilot.ui import (
    console,
    format_bytes,
    print_decision,
    print_error,
    print_info,
    print_proxy_log,
    print_status,
    print_success,
    print_warning,
    show_banner,
    show_config_status,
    show_pac,
    show_profiles_table,
    show_rules_table,
)

load_dotenv()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


def _build_rules(ctx: click.Context) -> RuleEngine:
    return build_rule_engine(ctx.obj["config"], ctx.obj["rules_file"])


def _profile_or_exit(store: ProfileStore, name: Optional[str]) -> ProxyConfig:
    config = store.get(name) if name else store.current
    if config is None:
        if name:
            print_error(f"No profile named '{name}'")
        else:
            print_error("No profile selected. Use 'shadowpilot profiles select <name>'")
        raise SystemExit(1)
    return config


# ── Main CLI ─────────────────────────────────────────────────────────────────

@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--no-banner", is_flag=True, help="Skip banner display")
@click.option("--rules", "rules_file", type=click.Path(path_type=Path), default=None,
              envvar="SHADOWPILOT_RULES", help="User rules file")
@click.option("--profiles", "profiles_file", type=click.Path(path_type=Path), default=None,
              envvar="SHADOWPILOT_PROFILES", help="Profiles file")
@click.version_option(__version__, prog_name="shadowpilot")
@click.pass_context
def main(ctx, verbose, no_banner, rules_file, profiles_file):
    """ShadowPilot — proxy client control plane"""
    ctx.ensure_object(dict)

    config = load_config()
    if verbose:
        config.ui.verbose = True
    _setup_logging(config.ui.verbose)

    ctx.obj["config"] = config
    ctx.obj["rules_file"] = rules_file or RULES_FILE
    ctx.obj["profiles_file"] = profiles_file or PROFILES_FILE
    ctx.obj["show_banner"] = config.ui.show_banner and not no_banner

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.argument("profile", required=False)
@click.option("--no-watch", is_flag=True, help="Disable network monitoring")
@click.pass_context
def run(ctx, profile, no_watch):
    """Run a proxy session in the foreground (Ctrl+C to stop)."""
    cfg = ctx.obj["config"]
    store = ProfileStore(ctx.obj["profiles_file"])
    config = _profile_or_exit(store, profile)

    if ctx.obj["show_banner"]:
        show_banner()

    controller = ProxyController.from_config(
        cfg, rules_file=ctx.obj["rules_file"], watch_network=not no_watch,
    )

    def on_log(level: LogLevel, message: str) -> None:
        print_proxy_log(level.value, message)

    def on_status(event: StatusEvent) -> None:
        print_status(event.status.value, event.detail)

    def on_network(status: NetworkStatus) -> None:
        print_info(f"Network: {status.value}")

    controller.on_log(on_log)
    controller.on_status(on_status)
    controller.on_network_status(on_network)

    try:
        controller.start(config)
    except ShadowPilotError as e:
        print_error(str(e))
        controller.shutdown()
        raise SystemExit(1)

    print_success(
        f"SOCKS proxy on {config.local_address}:{config.local_port} → "
        f"{config.server}:{config.server_port} ({config.mode.value})"
    )

    try:
        while True:
            time.sleep(0.5)
            state = controller.supervisor.state
            if state in (SupervisorState.STOPPED, SupervisorState.FAILED) and not controller.monitor.awaiting_reconnect:
                break
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/]")
    finally:
        counters = controller.traffic()
        controller.shutdown()
        print_info(
            f"Traffic: ↑ {format_bytes(counters.upload_bytes)} "
            f"↓ {format_bytes(counters.download_bytes)}"
        )


@main.command()
@click.argument("url")
@click.option("--mode", type=click.Choice([m.value for m in RoutingMode]), default=None,
              help="Override the routing mode")
@click.pass_context
def check(ctx, url, mode):
    """Show the routing decision for a URL."""
    engine = _build_rules(ctx)
    if mode:
        engine.mode = RoutingMode(mode)

    proxied = engine.should_proxy_url(url)
    host = urllib.parse.urlparse(url if "://" in url else f"http://{url}").hostname or ""
    match = engine.find_match(host, url)
    print_decision(url, proxied, match.get_summary() if match else None)


@main.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Write to file")
@click.option("--mode", type=click.Choice([m.value for m in RoutingMode]), default=None,
              help="Override the routing mode")
@click.pass_context
def pac(ctx, output, mode):
    """Render the rule set as a PAC script."""
    engine = _build_rules(ctx)
    if mode:
        engine.mode = RoutingMode(mode)
    script = engine.generate_pac()
    if output:
        output.write_text(script, encoding="utf-8")
        print_success(f"PAC script written to {output}")
    else:
        show_pac(script)


@main.command()
@click.argument("profile")
@click.pass_context
def validate(ctx, profile):
    """Validate a stored profile and show the proxy command line."""
    cfg = ctx.obj["config"]
    store = ProfileStore(ctx.obj["profiles_file"])
    config = _profile_or_exit(store, profile)
    try:
        config.validate()
    except ShadowPilotError as e:
        print_error(str(e))
        raise SystemExit(1)
    print_success(f"Profile '{profile}' is valid")
    console.print(" ".join([resolve_binary_path(cfg)] + config.masked_arguments()), highlight=False)


@main.command("config")
@click.pass_context
def show_config(ctx):
    """Show the effective configuration."""
    cfg = ctx.obj["config"]
    plat = detect_platform()
    show_config_status({
        "binary": resolve_binary_path(cfg),
        "mode": cfg.routing.mode,
        "pac proxy": f"{cfg.routing.pac_address}:{cfg.routing.pac_port}",
        "cidr matching": cfg.routing.cidr_matching,
        "auto reconnect": cfg.network.auto_reconnect,
        "reconnect delay": f"{cfg.network.reconnect_delay}s",
        "rules file": ctx.obj["rules_file"],
        "profiles file": ctx.obj["profiles_file"],
        "platform": f"{plat['system']} {plat['machine']}",
    })
    print_info(f"Config file: {CONFIG_FILE}")


# ── Rules ────────────────────────────────────────────────────────────────────

@main.group()
def rules():
    """Manage routing rules."""


@rules.command("list")
@click.option("--builtin", is_flag=True, help="Include built-in rules")
@click.pass_context
def rules_list(ctx, builtin):
    engine = _build_rules(ctx)
    if builtin:
        show_rules_table(engine.rules, "Built-in rules", numbered=False)
    show_rules_table(engine.user_rules, "User rules")


@rules.command("add")
@click.argument("kind", type=click.Choice(["domain", "ip", "keyword", "useragent"]))
@click.argument("value")
@click.argument("action", type=click.Choice([a.value for a in RuleAction]))
@click.option("--description", "-d", default=None, help="Rule description")
@click.pass_context
def rules_add(ctx, kind, value, action, description):
    engine = _build_rules(ctx)
    rule = ProxyRule(RuleKind.from_str(kind), value, RuleAction(action), description)
    engine.add_user_rule(rule)
    print_success(f"Added #{len(engine.user_rules) - 1}: {rule.get_summary()}")


@rules.command("remove")
@click.argument("index", type=int)
@click.pass_context
def rules_remove(ctx, index):
    engine = _build_rules(ctx)
    try:
        removed = engine.remove_user_rule(index)
    except IndexOutOfRange as e:
        print_error(str(e))
        raise SystemExit(1)
    print_success(f"Removed: {removed.get_summary()}")


# ── Profiles ─────────────────────────────────────────────────────────────────

@main.group()
def profiles():
    """Manage named proxy profiles."""


@profiles.command("list")
@click.pass_context
def profiles_list(ctx):
    store = ProfileStore(ctx.obj["profiles_file"])
    if not store.names():
        print_warning("No profiles yet. Add one with 'shadowpilot profiles add'")
        return
    show_profiles_table({n: store.get(n) for n in store.names()}, store.selected_name)


@profiles.command("add")
@click.argument("name")
@click.option("--server", "-s", required=True, help="Server address")
@click.option("--port", "-p", type=int, required=True, help="Server port")
@click.option("--password", "-k", required=True, help="Pre-shared secret")
@click.option("--method", "-m", type=click.Choice([m.value for m in EncryptionMethod]),
              default=EncryptionMethod.AES_256_GCM.value, show_default=True)
@click.option("--local-address", "-b", default="127.0.0.1", show_default=True)
@click.option("--local-port", "-l", type=int, default=1080, show_default=True)
@click.option("--udp/--no-udp", default=True, show_default=True)
@click.option("--timeout", type=float, default=300, show_default=True)
@click.option("--dns", default="8.8.8.8", show_default=True)
@click.option("--mode", type=click.Choice([m.value for m in RoutingMode]), default="whitelist",
              show_default=True)
@click.option("--tls-cert", type=click.Path(), default=None, help="Enable TLS with this certificate")
@click.option("--select", "select_it", is_flag=True, help="Select the profile after adding")
@click.pass_context
def profiles_add(ctx, name, server, port, password, method, local_address, local_port,
                 udp, timeout, dns, mode, tls_cert, select_it):
    config = ProxyConfig(
        server=server,
        server_port=port,
        password=password,
        method=EncryptionMethod(method),
        local_address=local_address,
        local_port=local_port,
        enable_udp=udp,
        timeout=timeout,
        dns_server=dns,
        mode=RoutingMode(mode),
        enable_tls=tls_cert is not None,
        tls_cert_path=tls_cert,
    )
    try:
        config.validate()
    except ShadowPilotError as e:
        print_error(str(e))
        raise SystemExit(1)

    store = ProfileStore(ctx.obj["profiles_file"])
    store.add(name, config)
    if select_it:
        store.select(name)
    print_success(f"Profile '{name}' saved")


@profiles.command("remove")
@click.argument("name")
@click.pass_context
def profiles_remove(ctx, name):
    store = ProfileStore(ctx.obj["profiles_file"])
    if not store.remove(name):
        print_error(f"No profile named '{name}'")
        raise SystemExit(1)
    print_success(f"Profile '{name}' removed")


@profiles.command("select")
@click.argument("name")
@click.pass_context
def profiles_select(ctx, name):
    store = ProfileStore(ctx.obj["profiles_file"])
    if store.select(name) is None:
        print_error(f"No profile named '{name}'")
        raise SystemExit(1)
    print_success(f"Selected '{name}'")


@profiles.command("show")
@click.argument("name")
@click.pass_context
def profiles_show(ctx, name):
    store = ProfileStore(ctx.obj["profiles_file"])
    config = _profile_or_exit(store, name)
    data = config.to_dict()
    data["password"] = "******"
    show_config_status(data)


@profiles.command("import")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def profiles_import(ctx, path):
    store = ProfileStore(ctx.obj["profiles_file"])
    try:
        names = store.import_file(path)
    except ShadowPilotError as e:
        print_error(str(e))
        raise SystemExit(1)
    print_success(f"Imported: {', '.join(names)}")


@profiles.command("export")
@click.argument("name")
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_context
def profiles_export(ctx, name, path):
    store = ProfileStore(ctx.obj["profiles_file"])
    try:
        store.export(name, path)
    except ShadowPilotError as e:
        print_error(str(e))
        raise SystemExit(1)
    print_success(f"Exported '{name}' to {path}")


if __name__ == "__main__":
    main()
