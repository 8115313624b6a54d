"""CLI entry point for the Lead Engagement Brief engine.

Usage:
    lead-brief bundle.json
    lead-brief bundle.json --since-days 30 --no-llm --out summary.html
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from leadbrief.brief.generator import generator_from_settings
from leadbrief.brief.pipeline import build_summary, enrich_marketing_properties, resolve_since_days
from leadbrief.config import settings, validate_config
from leadbrief.models import SourceBundle, SummaryResult
from leadbrief.policy import load_rules, load_timeline_policy

console = Console()


def _setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def _run(
    bundle: SourceBundle,
    since_days: int | None,
    use_generator: bool,
    record_base_url: str | None,
) -> SummaryResult:
    bundle = await enrich_marketing_properties(bundle)
    return await build_summary(
        bundle,
        rules=load_rules(),
        policy=load_timeline_policy(),
        generator=generator_from_settings() if use_generator else None,
        record_base_url=record_base_url,
        since_days=resolve_since_days(since_days),
    )


@click.command("lead-brief")
@click.argument("bundle_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--since-days", "-d", type=int, default=None, help="Lookback window for optional activity")
@click.option("--no-llm", is_flag=True, default=False, help="Skip the generator; deterministic summary only")
@click.option("--record-base-url", default=None, help="https:// base URL for record links")
@click.option("--out", "-o", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the HTML summary to this file")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the full result as JSON")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Verbose logging")
def cli(
    bundle_path: Path,
    since_days: int | None,
    no_llm: bool,
    record_base_url: str | None,
    out_path: Path | None,
    as_json: bool,
    verbose: bool,
):
    """Build the sales-facing summary for the lead in BUNDLE_PATH."""
    if verbose:
        settings.log_level = "DEBUG"
    _setup_logging()
    validate_config()

    try:
        bundle = SourceBundle.model_validate_json(bundle_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        console.print(f"[red]Error: not a valid source bundle: {bundle_path.name}[/red]")
        console.print(str(exc), markup=False, highlight=False)
        sys.exit(1)

    use_generator = not no_llm and settings.generator_configured
    console.print(
        Panel(
            f"[bold]Lead Engagement Brief[/bold]\n"
            f"Bundle: {bundle_path.name}  |  Lookback: {resolve_since_days(since_days)}d  |  "
            f"Generator: {'on' if use_generator else 'off'}",
            title="Lead Brief",
            border_style="blue",
        )
    )

    with console.status("[bold green]Building summary..."):
        result = asyncio.run(_run(bundle, since_days, not no_llm, record_base_url))

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    source_color = {"generator": "green", "deterministic": "yellow", "placeholder": "red"}.get(
        result.source, "white"
    )
    console.print(f"[bold]Source:[/bold] [{source_color}]{result.source}[/{source_color}]")
    llm = result.meta.llm
    if llm and not llm.ok and llm.error != "unconfigured":
        console.print(f"[bold]Generator:[/bold] rejected ({llm.error})")
        for reason in llm.validation:
            console.print(f"  - {reason}")
    if result.meta.timeline:
        counts = result.meta.timeline.included_counts
        console.print(
            f"[bold]Timeline:[/bold] {counts.get('always', 0)} milestones, "
            f"{counts.get('optional', 0)} recent activities"
        )
    if result.meta.error:
        console.print(f"[bold red]Narrative error:[/bold red] {result.meta.error}")
    console.print()

    if out_path:
        out_path.write_text(result.summary_html, encoding="utf-8")
        console.print(f"[bold green]HTML:[/bold green] {out_path}")
    else:
        console.print(result.summary_html, markup=False, highlight=False)


def main():
    cli()
