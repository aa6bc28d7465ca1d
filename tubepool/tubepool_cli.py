#!/usr/bin/env python3
"""
Tubepool Service - Entry Point

Usage:
    python -m tubepool.tubepool_cli start     # Start the service
    python -m tubepool.tubepool_cli status    # Show status (requires running service)
    python -m tubepool.tubepool_cli check     # Check that Chrome is reachable over CDP
"""

import asyncio
import sys

import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tubepool.src.api import load_config, server_address
from tubepool.src.errors import remediation_for
from tubepool.src.session import BrowserSessionManager

console = Console()


def print_banner():
    console.print(Panel.fit(
        "[bold]TUBEPOOL[/bold]\nYouTube listings and summaries over a shared browser",
        style="bold cyan",
    ))


def cmd_start():
    """Start the service."""
    print_banner()
    from tubepool.run_tubepool import run
    run(load_config())


def cmd_status():
    """Check status of running service."""
    config = load_config()
    host, port = server_address(config)
    base = f"http://{host}:{port}"

    try:
        health = requests.get(f"{base}/health", timeout=5)
        queue = requests.get(f"{base}/api/summary/queue/stats", timeout=5)
    except requests.exceptions.ConnectionError:
        console.print(f"[red]Could not connect to tubepool service at {host}:{port}[/red]")
        console.print("Is the service running? Start with: python -m tubepool.tubepool_cli start")
        sys.exit(1)

    if health.status_code != 200:
        console.print(f"[red]Error: {health.status_code}[/red]")
        sys.exit(1)

    info = health.json()
    browser = info.get("browser", {})
    state = browser.get("state", "unknown")
    state_style = "green" if state == "connected" else "red"

    table = Table(title="Tubepool Status", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Version", str(info.get("version")))
    table.add_row("Uptime", f"{info.get('uptime_seconds', 0):.0f}s")
    table.add_row("Browser", f"[{state_style}]{state}[/{state_style}] at {browser.get('endpoint')}")
    table.add_row("Reused context", str(browser.get("reused_context")))
    table.add_row("Open tabs", str(browser.get("page_count")))
    if browser.get("last_error"):
        table.add_row("Last error", browser["last_error"])

    if queue.status_code == 200:
        stats = queue.json()
        table.add_row("Workers", str(stats.get("workers")))
        table.add_row("Pending", str(stats.get("pending")))
        table.add_row("Processing", str(stats.get("processing")))
        table.add_row("Completed", f"{stats.get('completed')} retained / {stats.get('completed_total')} total")
        table.add_row("Failed", f"{stats.get('failed')} retained / {stats.get('failed_total')} total")

    console.print(table)


def cmd_check():
    """Probe the Chrome DevTools endpoint."""
    sessions = BrowserSessionManager.from_config(load_config())
    console.print(f"Probing {sessions.endpoint}/json/version ...")

    if asyncio.run(sessions.probe()):
        console.print(f"[green]Chrome is reachable at {sessions.endpoint}[/green]")
        return

    console.print(f"[red]Cannot connect to Chrome browser at {sessions.endpoint}[/red]\n")
    console.print(remediation_for(sessions.endpoint), markup=False)
    sys.exit(1)


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        console.print(__doc__, markup=False)
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "start":
        cmd_start()

    elif command == "status":
        cmd_status()

    elif command == "check":
        cmd_check()

    else:
        console.print(f"Unknown command: {command}")
        console.print(__doc__, markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
