"""Entry point for the site monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.api.server import build_components
from src.config import settings
from src.sites.registry import SiteRegistry

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STYLES = {"ok": "green", "warn": "yellow", "fail": "bold red"}


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting Site Monitor API Server", style="bold green"))
    uvicorn.run(
        "src.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def sync_sites() -> None:
    """Load sites.yaml into the store."""
    components = build_components(settings)
    try:
        count = SiteRegistry(settings.sites_file).sync(components["store"])
    finally:
        components["store"].close()
    console.print(f"[bold]Synced {count} checks from {settings.sites_file}[/bold]")


async def _poll_once() -> dict:
    components = build_components(settings)
    SiteRegistry(settings.sites_file).sync(components["store"])
    try:
        summary = await components["poller"].run_cycle()
        # flush anything the cycle queued while we are still running
        await components["dispatcher"].deliver_pending()
    finally:
        await components["poller"].stop()
        await components["dispatcher"].stop()
        components["store"].close()
    return summary.to_response()


def run_poll() -> None:
    """Run a single poll cycle from the command line."""
    with console.status("[bold green]Probing checks..."):
        response = asyncio.run(_poll_once())

    table = Table(title=f"{response['checks_run']} checks")
    table.add_column("Site")
    table.add_column("Check")
    table.add_column("Result")
    for r in response["results"]:
        table.add_row(r["site_name"], r["check_id"][:12], f"[{_STYLES[r['result']]}]{r['result']}[/]")
    console.print(table)

    s = response["summary"]
    console.print(f"\n[dim]{s['ok']} ok / {s['warn']} warn / {s['fail']} fail[/dim]")


def main() -> None:
    parser = argparse.ArgumentParser(description="Site health monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("poll", help="Run one poll cycle and print the results")
    sub.add_parser("sync-sites", help="Load sites.yaml into the store")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "poll":
        run_poll()
    elif args.command == "sync-sites":
        sync_sites()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
