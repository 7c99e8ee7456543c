"""
Bandit CLI Commands

Operator commands for section bandits: performance reports, resets, and the
timeout sweep that cron runs every few minutes.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

import click

from ..core.config import Config
from ..core.errors import BuildStoryError
from ..core.observability import setup_logfire
from ..services.bandit_state_store import SupabaseBanditStateStore
from ..services.experiment_strategist import ExperimentStrategist


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


def _get_strategist() -> ExperimentStrategist:
    Config.validate()
    setup_logfire()
    return ExperimentStrategist(SupabaseBanditStateStore())


@click.group(name="bandit")
def bandit_group():
    """Inspect and reset section bandits."""
    pass


@bandit_group.command(name="report")
@click.option("--story", "scope", required=True, help="Story id")
@click.option("--slot", required=True, help="Section key (e.g., hero)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw report as JSON")
def bandit_report(scope: str, slot: str, as_json: bool):
    """
    Show conversion estimates for every variant in a slot.

    Example:
        buildstory bandit report --story 1f0c... --slot hero
    """
    try:
        strategist = _get_strategist()
        report = asyncio.run(strategist.get_section_performance(scope, slot))
    except (BuildStoryError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        return

    if not report.arms:
        click.echo(f"No variants tracked for {scope}/{slot}")
        return

    click.echo(f"📊 {scope}/{slot}: {len(report.arms)} variant(s), {report.total_trials} trial(s)")
    for arm in sorted(report.arms, key=lambda a: a.conversion_rate, reverse=True):
        low, high = arm.confidence_interval
        marker = "⭐" if arm.variant_id == report.best_variant_id else "  "
        click.echo(
            f"{marker} {arm.variant_id[:12]}  rate={arm.conversion_rate:.3f}  "
            f"95% CI=[{low:.3f}, {high:.3f}]  trials={arm.trials}"
        )
    click.echo(f"Expected regret: {report.expected_regret:.2f}")


@bandit_group.command(name="reset")
@click.option("--story", "scope", required=True, help="Story id")
@click.option("--slot", required=True, help="Section key to reset")
@click.option("--yes", is_flag=True, help="Skip confirmation")
def bandit_reset(scope: str, slot: str, yes: bool):
    """Reset every variant in a slot back to Beta(1, 1)."""
    if not yes:
        click.confirm(f"Reset all variants for {scope}/{slot}?", abort=True)

    try:
        strategist = _get_strategist()
        count = asyncio.run(strategist.reset_section_bandit(scope, slot))
    except (BuildStoryError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"✅ Reset {count} variant(s) for {scope}/{slot}")


@click.group(name="timeouts")
def timeouts_group():
    """Timeout-driven negative rewards."""
    pass


@timeouts_group.command(name="sweep")
@click.option("--story", "scopes", required=True, multiple=True, help="Story id (repeatable)")
@click.option("--window", "window_minutes", type=float, default=Config.DEFAULT_TIMEOUT_MINUTES,
              show_default=True, help="Trailing window in minutes")
@click.option("--no-dedupe", is_flag=True,
              help="Penalize even if the arm was already penalized in this time bucket")
def timeouts_sweep(scopes, window_minutes: float, no_dedupe: bool):
    """
    Apply a failure to every arm with no conversion in the trailing window.

    Example:
        buildstory timeouts sweep --story 1f0c... --window 5
    """
    try:
        strategist = _get_strategist()
    except (BuildStoryError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(1)

    now = datetime.now(timezone.utc)
    failures = 0
    for scope in scopes:
        try:
            result = asyncio.run(strategist.process_timeouts(
                scope, window_minutes, now=now, dedupe_per_bucket=not no_dedupe,
            ))
        except BuildStoryError as e:
            logger.error(f"Timeout sweep failed for {scope}: {e}")
            click.echo(f"❌ {scope}: {e}", err=True)
            failures += 1
            continue

        click.echo(
            f"✅ {scope}: checked {result.arms_checked}, penalized {result.arms_penalized}, "
            f"skipped {result.arms_skipped}, failed {result.arms_failed}"
        )
        if result.arms_failed:
            failures += 1

    if failures:
        raise SystemExit(1)
