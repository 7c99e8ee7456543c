"""
Classify CLI Command

Runs the persona classifier against hand-entered request signals, for
checking how a campaign link or referrer will be bucketed.
"""

import json
from datetime import datetime
from typing import Optional

import click

from ..services.persona_classifier import PersonaClassifier, extract_signals


@click.command(name="classify")
@click.option("--url", default="", help="Landing URL including utm_* parameters")
@click.option("--user-agent", default=None, help="User-Agent header")
@click.option("--referrer", default=None, help="Referer header")
@click.option("--poll", default=None, help="Segment picked in the persona poll")
@click.option("--at", "at", type=click.DateTime(), default=None,
              help="Visitor-local time (enables time-of-day rules)")
@click.option("--search", default=None, help="Session search terms")
@click.option("--cart-size", type=int, default=None, help="Session cart size")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def classify_command(
    url: str,
    user_agent: Optional[str],
    referrer: Optional[str],
    poll: Optional[str],
    at: Optional[datetime],
    search: Optional[str],
    cart_size: Optional[int],
    as_json: bool,
):
    """
    Classify a visitor into a segment.

    Example:
        buildstory classify --url "https://x.io/s/1?utm_campaign=marathon" --at 2025-03-04T06:30
    """
    headers = {}
    if user_agent:
        headers["User-Agent"] = user_agent
    if referrer:
        headers["Referer"] = referrer

    session = {}
    if search:
        session["searchTerms"] = search
    if cart_size is not None:
        session["cartSize"] = cart_size

    signals = extract_signals(url, headers, now=at, session=session)
    if poll:
        signals = signals.model_copy(update={"poll_result": poll})

    result = PersonaClassifier().classify(signals)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    click.echo(f"🎯 {result.segment.value} (confidence {result.segment_confidence:.2f})")
    for line in result.rationale:
        click.echo(f"   - {line}")
