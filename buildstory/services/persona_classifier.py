"""
PersonaClassifier - heuristic audience segmentation from request signals.

Each rule is an independent (predicate, weights, rationale) entry; matching
rules add their weights to per-segment scores and append their rationale.
The top segment wins with a confidence equal to its margin over the runner
up, clamped to [CONFIDENCE_FLOOR, CONFIDENCE_CEILING]. Weak wins for a
non-default segment fall back to the default segment.

Classification never raises: missing or unusable signals only leave the
scores at their baseline.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

from .models import (
    DEFAULT_SEGMENT,
    ClassificationResult,
    DeviceClass,
    Segment,
    SignalBundle,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

POLL_CONFIDENCE = 0.95
CONFIDENCE_FLOOR = 0.3
CONFIDENCE_CEILING = 0.95
LOW_CONFIDENCE_THRESHOLD = 0.4
DEFAULT_FALLBACK_CONFIDENCE = 0.4
DEFAULT_BASELINE_WEIGHT = 0.1

CAMPAIGN_WEIGHT = 0.4
EXPLICIT_CAMPAIGN_SEGMENT_WEIGHT = 0.6
REFERRER_WEIGHT = 0.3
SEARCH_TERM_WEIGHT = 0.3
CART_SIZE_THRESHOLD = 2

DEFAULT_RATIONALE = "default classification"

# Segment order doubles as the tie-break order when scores are equal
SEGMENT_ORDER: Sequence[Segment] = (
    Segment.ATHLETE, Segment.COMMUTER, Segment.OUTDOOR, Segment.FAMILY,
)

# (utm field, keywords) per segment
CAMPAIGN_KEYWORDS: Dict[Segment, Dict[str, Sequence[str]]] = {
    Segment.ATHLETE: {"utm_source": ("fitness", "gym", "strava"), "utm_campaign": ("sport",)},
    Segment.COMMUTER: {
        "utm_source": ("linkedin",),
        "utm_campaign": ("office", "work"),
        "utm_content": ("daily",),
    },
    Segment.OUTDOOR: {"utm_source": ("outdoor", "rei", "trail"), "utm_campaign": ("adventure",)},
    Segment.FAMILY: {"utm_source": ("parent", "mom", "family"), "utm_campaign": ("kids",)},
}

REFERRER_KEYWORDS: Dict[Segment, Sequence[str]] = {
    Segment.ATHLETE: ("runner", "fitness", "gym", "training"),
    Segment.OUTDOOR: ("outdoor", "hiking", "camping", "trail"),
    Segment.FAMILY: ("parent", "mom", "dad", "family"),
    Segment.COMMUTER: ("office", "productivity", "linkedin"),
}

SEARCH_KEYWORDS: Dict[Segment, Sequence[str]] = {
    Segment.ATHLETE: ("sport", "gym"),
    Segment.COMMUTER: ("office", "work"),
    Segment.OUTDOOR: ("hiking", "camping"),
    Segment.FAMILY: ("kids", "spill"),
}

DEVICE_WEIGHTS: Dict[DeviceClass, Dict[Segment, float]] = {
    DeviceClass.MOBILE: {Segment.ATHLETE: 0.1, Segment.FAMILY: 0.1},
    DeviceClass.DESKTOP: {Segment.COMMUTER: 0.2},
    DeviceClass.TABLET: {Segment.FAMILY: 0.2},
}

DEVICE_RATIONALE = {
    DeviceClass.MOBILE: "Mobile device",
    DeviceClass.DESKTOP: "Desktop (office pattern)",
    DeviceClass.TABLET: "Tablet device",
}

REFERRER_RATIONALE = {
    Segment.ATHLETE: "Fitness referrer",
    Segment.OUTDOOR: "Outdoor referrer",
    Segment.FAMILY: "Family/parenting referrer",
    Segment.COMMUTER: "Professional referrer",
}

_MOBILE_UA = re.compile(r"Mobile|Android|iPhone")
_TABLET_UA = re.compile(r"iPad|Tablet")


# =============================================================================
# Rule table
# =============================================================================

@dataclass(frozen=True)
class ClassificationRule:
    """One additive heuristic.

    rationale may be a fixed string or a function of the signals, so that
    messages can quote the matched source.
    """
    name: str
    predicate: Callable[[SignalBundle], bool]
    weights: Mapping[Segment, float]
    rationale: Union[str, Callable[[SignalBundle], str], None] = None

    def describe(self, signals: SignalBundle) -> Optional[str]:
        if callable(self.rationale):
            return self.rationale(signals)
        return self.rationale


def _lower(value: Optional[str]) -> str:
    return value.lower() if isinstance(value, str) else ""


def _campaign_field(signals: SignalBundle, field: str) -> str:
    return _lower((signals.campaign or {}).get(field))


def _campaign_matches(segment: Segment) -> Callable[[SignalBundle], bool]:
    def predicate(signals: SignalBundle) -> bool:
        for field, keywords in CAMPAIGN_KEYWORDS[segment].items():
            value = _campaign_field(signals, field)
            if value and any(k in value for k in keywords):
                return True
        return False
    return predicate


def _campaign_source_label(signals: SignalBundle) -> str:
    return _campaign_field(signals, "utm_source") or _campaign_field(signals, "utm_campaign")


def _explicit_campaign_segment(segment: Segment) -> Callable[[SignalBundle], bool]:
    def predicate(signals: SignalBundle) -> bool:
        return _campaign_field(signals, "utm_persona") == segment.value
    return predicate


def _referrer_matches(segment: Segment) -> Callable[[SignalBundle], bool]:
    def predicate(signals: SignalBundle) -> bool:
        referrer = _lower(signals.referrer)
        return bool(referrer) and any(k in referrer for k in REFERRER_KEYWORDS[segment])
    return predicate


def _search_matches(segment: Segment) -> Callable[[SignalBundle], bool]:
    def predicate(signals: SignalBundle) -> bool:
        terms = _lower(signals.search_terms)
        return bool(terms) and any(k in terms for k in SEARCH_KEYWORDS[segment])
    return predicate


def _device_is(device: DeviceClass) -> Callable[[SignalBundle], bool]:
    def predicate(signals: SignalBundle) -> bool:
        return _lower(signals.device_class) == device.value
    return predicate


def _hour_between(start: int, end: int, signals: SignalBundle) -> bool:
    hour = signals.hour_of_day
    return isinstance(hour, int) and start <= hour <= end


def _is_early_morning(signals: SignalBundle) -> bool:
    return _hour_between(5, 7, signals)


def _is_weekday_commute(signals: SignalBundle) -> bool:
    day = signals.day_of_week
    if not isinstance(day, int) or not 1 <= day <= 5:
        return False
    return _hour_between(7, 9, signals) or _hour_between(17, 19, signals)


def _is_weekend(signals: SignalBundle) -> bool:
    return signals.day_of_week in (0, 6)


def _has_large_cart(signals: SignalBundle) -> bool:
    cart_size = signals.cart_size
    return isinstance(cart_size, int) and cart_size > CART_SIZE_THRESHOLD


def _build_rules() -> List[ClassificationRule]:
    rules = [
        ClassificationRule(
            "campaign_athlete", _campaign_matches(Segment.ATHLETE),
            {Segment.ATHLETE: CAMPAIGN_WEIGHT},
            lambda s: f"Fitness source: {_campaign_source_label(s)}",
        ),
        ClassificationRule(
            "campaign_commuter", _campaign_matches(Segment.COMMUTER),
            {Segment.COMMUTER: CAMPAIGN_WEIGHT},
            lambda s: f"Work/commute source: {_campaign_source_label(s)}",
        ),
        ClassificationRule(
            "campaign_outdoor", _campaign_matches(Segment.OUTDOOR),
            {Segment.OUTDOOR: CAMPAIGN_WEIGHT}, "Outdoor source detected",
        ),
        ClassificationRule(
            "campaign_family", _campaign_matches(Segment.FAMILY),
            {Segment.FAMILY: CAMPAIGN_WEIGHT}, "Family/parenting source",
        ),
    ]

    rules.extend(
        ClassificationRule(
            f"campaign_persona_{segment.value}", _explicit_campaign_segment(segment),
            {segment: EXPLICIT_CAMPAIGN_SEGMENT_WEIGHT}, f"UTM persona: {segment.value}",
        )
        for segment in SEGMENT_ORDER
    )

    rules.extend([
        ClassificationRule(
            "early_morning", _is_early_morning,
            {Segment.ATHLETE: 0.2}, "Early morning visitor (athlete pattern)",
        ),
        ClassificationRule(
            "weekday_commute", _is_weekday_commute,
            {Segment.COMMUTER: 0.3}, "Commute hours on weekday",
        ),
        ClassificationRule(
            "weekend", _is_weekend,
            {Segment.OUTDOOR: 0.1, Segment.FAMILY: 0.1}, "Weekend visitor",
        ),
    ])

    rules.extend(
        ClassificationRule(
            f"device_{device.value}", _device_is(device), weights, DEVICE_RATIONALE[device],
        )
        for device, weights in DEVICE_WEIGHTS.items()
    )

    rules.extend(
        ClassificationRule(
            f"referrer_{segment.value}", _referrer_matches(segment),
            {segment: REFERRER_WEIGHT}, REFERRER_RATIONALE[segment],
        )
        for segment in REFERRER_KEYWORDS
    )

    rules.extend(
        ClassificationRule(
            f"search_{segment.value}", _search_matches(segment),
            {segment: SEARCH_TERM_WEIGHT}, f"Search terms suggest {segment.value}",
        )
        for segment in SEARCH_KEYWORDS
    )

    rules.append(ClassificationRule(
        "large_cart", _has_large_cart, {Segment.FAMILY: 0.2}, "Multiple items in cart",
    ))

    # Baseline tie-breaker toward the default segment; not part of the rationale
    rules.append(ClassificationRule(
        "default_baseline", lambda s: True,
        {DEFAULT_SEGMENT: DEFAULT_BASELINE_WEIGHT}, None,
    ))
    return rules


DEFAULT_RULES: Sequence[ClassificationRule] = tuple(_build_rules())


# =============================================================================
# Classifier
# =============================================================================

def validate_poll_segment(value: Optional[str]) -> Optional[Segment]:
    """Return the segment named by a poll answer, or None if unknown."""
    if not isinstance(value, str):
        return None
    try:
        return Segment(value.strip().lower())
    except ValueError:
        return None


class PersonaClassifier:
    """Maps a SignalBundle to a segment, a confidence and a rationale trail."""

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None):
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES

    def score(self, signals: SignalBundle) -> Tuple[Dict[Segment, float], List[str]]:
        """Apply every rule.

        Returns:
            (scores by segment, rationale list)
        """
        scores: Dict[Segment, float] = {segment: 0.0 for segment in SEGMENT_ORDER}
        rationale: List[str] = []

        for rule in self.rules:
            try:
                matched = rule.predicate(signals)
            except Exception as e:
                # A broken rule must not take classification down with it
                logger.warning(f"Classification rule '{rule.name}' failed: {e}")
                continue
            if not matched:
                continue
            for segment, weight in rule.weights.items():
                scores[segment] += weight
            description = rule.describe(signals)
            if description:
                rationale.append(description)

        return scores, rationale

    def classify(self, signals: Optional[SignalBundle] = None) -> ClassificationResult:
        """Classify one request.

        Args:
            signals: Request signals; None is treated as an empty bundle.

        Returns:
            ClassificationResult with segment, segment_confidence, rationale.
        """
        signals = signals or SignalBundle()

        polled = validate_poll_segment(signals.poll_result)
        if polled is not None:
            return ClassificationResult(
                segment=polled,
                segment_confidence=POLL_CONFIDENCE,
                rationale=("Direct user selection via poll",),
            )

        scores, rationale = self.score(signals)

        ranked = sorted(SEGMENT_ORDER, key=lambda seg: -round(scores[seg], 6))
        top, second = ranked[0], ranked[1]
        margin = round(scores[top] - scores[second], 6)
        confidence = min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, margin))

        if confidence < LOW_CONFIDENCE_THRESHOLD and top != DEFAULT_SEGMENT:
            logger.debug(
                f"Low confidence {confidence:.2f} for {top.value}, "
                f"falling back to {DEFAULT_SEGMENT.value}"
            )
            return ClassificationResult(
                segment=DEFAULT_SEGMENT,
                segment_confidence=DEFAULT_FALLBACK_CONFIDENCE,
                rationale=(
                    f"Low confidence ({confidence:.2f}), defaulting to {DEFAULT_SEGMENT.value}",
                    *rationale,
                ),
            )

        return ClassificationResult(
            segment=top,
            segment_confidence=confidence,
            rationale=tuple(rationale) or (DEFAULT_RATIONALE,),
        )


# =============================================================================
# Request helpers
# =============================================================================

def detect_device_class(user_agent: Optional[str]) -> DeviceClass:
    """Coarse device class from a user-agent string (desktop when unknown)."""
    if user_agent and _MOBILE_UA.search(user_agent):
        return DeviceClass.TABLET if _TABLET_UA.search(user_agent) else DeviceClass.MOBILE
    return DeviceClass.DESKTOP


def extract_signals(
    url: str,
    headers: Mapping[str, str],
    now: Optional[datetime] = None,
    session: Optional[Mapping[str, object]] = None,
) -> SignalBundle:
    """Build a SignalBundle from an inbound request.

    Args:
        url: Full request URL; utm_* query parameters become campaign signals.
        headers: Request headers (case-insensitive lookup for user-agent/referer).
        now: Visitor-local time used for the time-of-day rules.
        session: Optional session data with searchTerms / cartSize.

    Returns:
        SignalBundle
    """
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    user_agent = lowered.get("user-agent") or None
    referrer = lowered.get("referer") or lowered.get("referrer") or None

    try:
        query = urlsplit(url or "").query
    except ValueError:
        query = ""
    campaign = {k: v for k, v in parse_qsl(query) if k.startswith("utm_")}

    hour = day = None
    if now is not None:
        hour = now.hour
        # datetime.weekday() is Monday=0; signals use Sunday=0
        day = (now.weekday() + 1) % 7

    session = session or {}
    search_terms = session.get("searchTerms")
    cart_size = session.get("cartSize")

    return SignalBundle(
        referrer=referrer,
        user_agent=user_agent,
        device_class=detect_device_class(user_agent).value,
        campaign=campaign,
        hour_of_day=hour,
        day_of_week=day,
        search_terms=search_terms if isinstance(search_terms, str) else None,
        cart_size=cart_size if isinstance(cart_size, int) else None,
    )
