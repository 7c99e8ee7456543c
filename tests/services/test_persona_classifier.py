"""
Tests for PersonaClassifier - rule scoring, poll override, low-confidence fallback,
and request signal extraction.
"""

from datetime import datetime

import pytest

from buildstory.services.models import DeviceClass, Segment, SignalBundle
from buildstory.services.persona_classifier import (
    CONFIDENCE_CEILING,
    CONFIDENCE_FLOOR,
    DEFAULT_FALLBACK_CONFIDENCE,
    DEFAULT_RATIONALE,
    POLL_CONFIDENCE,
    ClassificationRule,
    PersonaClassifier,
    detect_device_class,
    extract_signals,
    validate_poll_segment,
)


@pytest.fixture
def classifier():
    return PersonaClassifier()


IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
IPAD_UA = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
DESKTOP_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15"


# ============================================================================
# Poll override
# ============================================================================

class TestPollOverride:
    def test_poll_wins_regardless_of_other_signals(self, classifier):
        signals = SignalBundle(
            poll_result="family",
            campaign={"utm_source": "strava", "utm_persona": "athlete"},
            hour_of_day=6,
            device_class="desktop",
        )
        result = classifier.classify(signals)
        assert result.segment == Segment.FAMILY
        assert result.segment_confidence == POLL_CONFIDENCE
        assert result.rationale == ("Direct user selection via poll",)

    def test_invalid_poll_is_ignored(self, classifier):
        result = classifier.classify(SignalBundle(poll_result="astronaut"))
        assert result.segment == Segment.COMMUTER
        assert result.segment_confidence == CONFIDENCE_FLOOR

    def test_validate_poll_segment(self):
        assert validate_poll_segment("Outdoor ") == Segment.OUTDOOR
        assert validate_poll_segment("pirate") is None
        assert validate_poll_segment(None) is None
        assert validate_poll_segment(3) is None


# ============================================================================
# Scoring
# ============================================================================

class TestClassify:
    def test_no_signals_returns_default_at_floor(self, classifier):
        result = classifier.classify(SignalBundle())
        assert result.segment == Segment.COMMUTER
        assert result.segment_confidence == CONFIDENCE_FLOOR
        assert result.rationale == (DEFAULT_RATIONALE,)

    def test_none_treated_as_empty(self, classifier):
        assert classifier.classify(None) == classifier.classify(SignalBundle())

    def test_campaign_and_explicit_persona(self, classifier):
        signals = SignalBundle(campaign={"utm_source": "strava", "utm_persona": "athlete"})
        result = classifier.classify(signals)
        assert result.segment == Segment.ATHLETE
        # athlete 1.0 vs commuter baseline 0.1
        assert result.segment_confidence == pytest.approx(0.9)
        assert result.rationale == ("Fitness source: strava", "UTM persona: athlete")

    def test_weekday_commute_on_desktop(self, classifier):
        signals = SignalBundle(hour_of_day=8, day_of_week=2, device_class="desktop")
        result = classifier.classify(signals)
        assert result.segment == Segment.COMMUTER
        assert result.segment_confidence == pytest.approx(0.6)
        assert result.rationale == ("Commute hours on weekday", "Desktop (office pattern)")

    def test_commute_hours_ignored_on_weekend(self, classifier):
        signals = SignalBundle(hour_of_day=8, day_of_week=6)
        scores, rationale = classifier.score(signals)
        assert scores[Segment.COMMUTER] == pytest.approx(0.1)
        assert scores[Segment.OUTDOOR] == pytest.approx(0.1)
        assert scores[Segment.FAMILY] == pytest.approx(0.1)
        assert rationale == ["Weekend visitor"]

    def test_confidence_capped_at_ceiling(self, classifier):
        signals = SignalBundle(
            campaign={"utm_source": "strava", "utm_campaign": "sport", "utm_persona": "athlete"},
            hour_of_day=6,
            referrer="https://runnersworld.com",
            search_terms="gym bottle",
        )
        result = classifier.classify(signals)
        assert result.segment == Segment.ATHLETE
        assert result.segment_confidence == CONFIDENCE_CEILING

    def test_weak_non_default_win_falls_back_to_default(self, classifier):
        signals = SignalBundle(referrer="https://hiking-blog.example")
        result = classifier.classify(signals)
        assert result.segment == Segment.COMMUTER
        assert result.segment_confidence == DEFAULT_FALLBACK_CONFIDENCE
        assert result.rationale[0] == "Low confidence (0.30), defaulting to commuter"
        assert "Outdoor referrer" in result.rationale

    def test_large_cart_and_tablet_favor_family(self, classifier):
        signals = SignalBundle(device_class="tablet", cart_size=4, search_terms="kids bottles")
        result = classifier.classify(signals)
        assert result.segment == Segment.FAMILY
        # family 0.2 + 0.2 + 0.3 vs commuter baseline 0.1
        assert result.segment_confidence == pytest.approx(0.5)

    def test_malformed_signals_never_raise(self, classifier):
        signals = SignalBundle(campaign={"utm_source": ""}, device_class="toaster", cart_size=-3)
        result = classifier.classify(signals)
        assert result.segment == Segment.COMMUTER

    def test_failing_rule_is_skipped(self):
        def explode(signals):
            raise RuntimeError("boom")

        rules = [
            ClassificationRule("broken", explode, {Segment.ATHLETE: 5.0}, "never"),
            ClassificationRule("family", lambda s: True, {Segment.FAMILY: 0.9}, "always family"),
        ]
        result = PersonaClassifier(rules=rules).classify(SignalBundle())
        assert result.segment == Segment.FAMILY
        assert result.segment_confidence == pytest.approx(0.9)
        assert result.rationale == ("always family",)

    def test_rule_rationale_forms(self):
        signals = SignalBundle(referrer="https://www.strava.com/")
        fixed = ClassificationRule("fixed", lambda s: True, {Segment.ATHLETE: 1.0}, "fixed text")
        derived = ClassificationRule(
            "derived", lambda s: True, {Segment.ATHLETE: 1.0}, lambda s: f"from {s.referrer}",
        )
        silent = ClassificationRule("silent", lambda s: True, {Segment.ATHLETE: 1.0})

        assert fixed.describe(signals) == "fixed text"
        assert derived.describe(signals) == "from https://www.strava.com/"
        assert silent.describe(signals) is None

    def test_tie_keeps_segment_order(self):
        rules = [
            ClassificationRule("a", lambda s: True, {Segment.OUTDOOR: 0.5, Segment.ATHLETE: 0.5}, "tie"),
        ]
        scores, _ = PersonaClassifier(rules=rules).score(SignalBundle())
        assert scores[Segment.OUTDOOR] == scores[Segment.ATHLETE]
        result = PersonaClassifier(rules=rules).classify(SignalBundle())
        # athlete ranks first on a tie, margin 0 -> floor -> fallback
        assert result.segment == Segment.COMMUTER
        assert result.rationale[0].startswith("Low confidence (0.30)")


# ============================================================================
# Request signals
# ============================================================================

class TestExtractSignals:
    def test_device_detection(self):
        assert detect_device_class(IPHONE_UA) == DeviceClass.MOBILE
        assert detect_device_class(IPAD_UA) == DeviceClass.TABLET
        assert detect_device_class(DESKTOP_UA) == DeviceClass.DESKTOP
        assert detect_device_class(None) == DeviceClass.DESKTOP

    def test_extracts_campaign_headers_and_time(self):
        # 2025-03-02 is a Sunday
        now = datetime(2025, 3, 2, 6, 30)
        signals = extract_signals(
            "https://shop.example/s/1?utm_source=Strava&utm_campaign=spring&ref=abc",
            {"User-Agent": IPHONE_UA, "Referer": "https://runnersworld.com"},
            now=now,
            session={"searchTerms": "gym", "cartSize": 3},
        )
        assert signals.campaign == {"utm_source": "Strava", "utm_campaign": "spring"}
        assert signals.device_class == "mobile"
        assert signals.referrer == "https://runnersworld.com"
        assert signals.hour_of_day == 6
        assert signals.day_of_week == 0
        assert signals.search_terms == "gym"
        assert signals.cart_size == 3

    def test_no_clock_no_time_signals(self):
        signals = extract_signals("https://shop.example/", {})
        assert signals.hour_of_day is None
        assert signals.day_of_week is None
        assert signals.campaign == {}

    def test_bad_session_values_dropped(self):
        signals = extract_signals("", {}, session={"searchTerms": 12, "cartSize": "many"})
        assert signals.search_terms is None
        assert signals.cart_size is None

    def test_extracted_signals_classify(self):
        signals = extract_signals(
            "https://shop.example/?utm_source=strava&utm_persona=athlete",
            {"user-agent": IPHONE_UA},
            now=datetime(2025, 3, 4, 6, 0),
        )
        result = PersonaClassifier().classify(signals)
        assert result.segment == Segment.ATHLETE
