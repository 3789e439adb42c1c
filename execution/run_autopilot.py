#!/usr/bin/env python3
"""
Autopilot Runner
================
Operator entry point for the autonomous decision and workflow engine.

Usage:
    python execution/run_autopilot.py --tick
    python execution/run_autopilot.py --sweep owner_123
    python execution/run_autopilot.py --set-tier owner_123 medium
    python execution/run_autopilot.py --status
    python execution/run_autopilot.py --audit --owner owner_123
    python execution/run_autopilot.py --loop

State lives in the backend named by AUTOPILOT_STATE_BACKEND (memory or
redis). With the memory backend every invocation starts empty, so --loop
is the only useful mode there.
"""

import argparse
import asyncio
import logging
import sys
from collections import Counter
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv
load_dotenv()

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autopilot.errors import AutopilotError
from autopilot.models import AutonomyTier
from autopilot.nurturing import SEQUENCES
from autopilot.permissions import PROFILES, SUGGESTIONS
from autopilot.escalation import WORKFLOWS
from autopilot.runtime import AutopilotRuntime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - [AUTOPILOT] - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger("run_autopilot")

console = Console()


async def show_status(runtime: AutopilotRuntime) -> None:
    store = runtime.store
    sequences = Counter(d.get("status") for d in await store.query(SEQUENCES))
    workflows = Counter(d.get("status") for d in await store.query(WORKFLOWS))
    pending = await store.query(SUGGESTIONS, {"status": "pending"})
    profiles = await store.query(PROFILES)

    table = Table(title="Autopilot Status")
    table.add_column("Entity", style="cyan")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in sorted(sequences.items()):
        table.add_row("nurturing sequence", status, str(count))
    for status, count in sorted(workflows.items()):
        table.add_row("escalation workflow", status, str(count))
    table.add_row("suggestion", "pending", str(len(pending)))
    console.print(table)

    tiers = Table(title="Autonomy Tiers")
    tiers.add_column("Owner", style="cyan")
    tiers.add_column("Tier")
    for profile in profiles:
        tiers.add_row(profile["owner_id"], profile.get("tier", "none"))
    console.print(tiers)


async def show_audit(runtime: AutopilotRuntime, owner_id: str, limit: int) -> None:
    records = await runtime.audit.get_records(owner_id=owner_id, limit=limit)
    table = Table(title=f"Audit Log ({len(records)} records)")
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Owner", style="cyan")
    table.add_column("Action")
    table.add_column("Description")
    table.add_column("Sim")
    table.add_column("Reviewed")
    for record in records:
        table.add_row(
            str(record["id"]),
            record["timestamp"][:19],
            record["owner_id"],
            record["action_type"],
            record["description"],
            "yes" if record["is_simulation"] else "",
            "[green]yes[/green]" if record["reviewed"] else "[yellow]no[/yellow]",
        )
    console.print(table)


async def main():
    parser = argparse.ArgumentParser(description="Autopilot Runner")
    parser.add_argument("--tick", action="store_true", help="Run one delivery tick")
    parser.add_argument("--sweep", metavar="OWNER", help="Run the autonomous optimizer for one owner")
    parser.add_argument("--loop", action="store_true", help="Run the scheduler until interrupted")
    parser.add_argument("--status", action="store_true", help="Show sequence, workflow and suggestion counts")
    parser.add_argument("--set-tier", nargs=2, metavar=("OWNER", "TIER"),
                        help=f"Set an owner's autonomy tier ({', '.join(t.value for t in AutonomyTier)})")
    parser.add_argument("--audit", action="store_true", help="Show recent audit records")
    parser.add_argument("--owner", help="Filter --audit by owner")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--provider", help="Text generation provider tag (anthropic, openai, gemini)")
    args = parser.parse_args()

    runtime = AutopilotRuntime(provider_tag=args.provider)
    await runtime.start()
    try:
        if args.set_tier:
            owner_id, tier = args.set_tier
            profile = await runtime.gate.set_profile(owner_id, tier)
            console.print(f"[green]{profile.owner_id} autonomy tier set to {profile.tier.value}[/green]")

        if args.sweep:
            summary = await runtime.optimizer.run(args.sweep)
            console.print(Panel(
                f"[bold]Campaigns:[/bold] {summary['campaigns']}\n"
                f"[bold]Opportunities:[/bold] {summary['opportunities']}\n"
                f"[bold]Implemented:[/bold] {summary['implemented']}\n"
                f"[bold]Suggested:[/bold] {summary['suggested']}\n"
                f"[bold]Deferred:[/bold] {summary['deferred']}\n"
                f"[bold]Failed:[/bold] {summary['failed']}",
                title=f"Sweep: {args.sweep}",
            ))

        if args.tick:
            report = await runtime.scheduler.tick()
            console.print(Panel(
                "\n".join(f"[bold]{key.title()}:[/bold] {value}" for key, value in report.items()),
                title="Delivery Tick",
            ))

        if args.status:
            await show_status(runtime)

        if args.audit:
            await show_audit(runtime, args.owner, args.limit)

        if args.loop:
            try:
                await runtime.scheduler.run_forever()
            except asyncio.CancelledError:
                runtime.scheduler.stop()

        if not any([args.set_tier, args.sweep, args.tick, args.status, args.audit, args.loop]):
            parser.print_help()
    except AutopilotError as exc:
        console.print(f"[red]{exc.error_type.value}: {exc.message}[/red]")
        sys.exit(1)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
