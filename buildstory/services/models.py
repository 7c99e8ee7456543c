"""
Pydantic models for the BuildStory decision engine.

These models provide validated data structures for:
- Audience segments and request-time signals (SignalBundle)
- Classification output (ClassificationResult)
- Persisted bandit arms (ArmState) and interaction events (InteractionEvent)
- Strategist and assembler results (VariantChoice, SectionPerformance,
  AssembledStoryboard)

Sections are kept as opaque dicts: the engine only ever hashes them and reads
their slot key.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Enumerations
# ============================================================================

class Segment(str, Enum):
    """Audience segment (closed set)."""
    ATHLETE = "athlete"
    COMMUTER = "commuter"
    OUTDOOR = "outdoor"
    FAMILY = "family"


DEFAULT_SEGMENT = Segment.COMMUTER


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class EventKind(str, Enum):
    """Event tags written to the events table."""
    # Client interactions
    VIEW = "view"
    DWELL = "dwell"
    HOVER = "hover"
    SCROLL_DEPTH = "scrollDepth"
    CTA_CLICK = "ctaClick"
    POLL_PERSONA = "pollPersona"
    BOUNCE = "bounce"
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"

    # Engine bookkeeping
    VARIANT_SELECTED = "variantSelected"
    VARIANT_DEPLOYED = "variantDeployed"
    NO_CONVERSION = "noConversion"
    TIMEOUT_PENALTY = "timeoutPenalty"
    BANDIT_RESET = "banditReset"


# Events that count as a success when sweeping for timeouts
CONVERSION_EVENT_KINDS: Tuple[EventKind, ...] = (EventKind.CTA_CLICK, EventKind.CONVERSION)

# Slot key used for page-level events
PAGE_SLOT = "page"


# ============================================================================
# Classification
# ============================================================================

class SignalBundle(BaseModel):
    """
    Request-time signals used to infer a visitor's segment.

    Every field is optional and loosely typed so that classification can
    degrade instead of failing on odd input.
    """
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    device_class: Optional[str] = Field(None, description="mobile, tablet or desktop")
    campaign: Dict[str, str] = Field(default_factory=dict, description="utm_* parameters")
    poll_result: Optional[str] = Field(None, description="Explicit segment chosen by the visitor")
    hour_of_day: Optional[int] = Field(None, description="0-23, caller's local time")
    day_of_week: Optional[int] = Field(None, description="0=Sunday .. 6=Saturday")
    search_terms: Optional[str] = None
    cart_size: Optional[int] = None


class ClassificationResult(BaseModel):
    """Segment decision for one request."""
    model_config = ConfigDict(frozen=True)

    segment: Segment
    segment_confidence: float = Field(..., ge=0.0, le=1.0)
    rationale: Tuple[str, ...] = Field(default_factory=tuple)


# ============================================================================
# Bandit state
# ============================================================================

class ArmState(BaseModel):
    """Beta(alpha, beta) posterior for one (scope, slot, variant) arm."""
    model_config = ConfigDict(frozen=True)

    scope: str
    slot: str
    variant_id: str
    alpha: int = Field(default=1, ge=1)
    beta: int = Field(default=1, ge=1)

    @property
    def trials(self) -> int:
        """Rewards applied so far."""
        return self.alpha + self.beta - 2

    @property
    def is_prior(self) -> bool:
        return self.alpha == 1 and self.beta == 1


class Arm(BaseModel):
    """Minimal arm view handed to the sampler."""
    id: str
    alpha: int = Field(..., ge=1)
    beta: int = Field(..., ge=1)


class InteractionEvent(BaseModel):
    """Append-only record of an observed interaction or engine action."""
    model_config = ConfigDict(frozen=True)

    scope: str
    slot: str = PAGE_SLOT
    kind: EventKind
    segment: Optional[Segment] = None
    variant_id: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Strategist results
# ============================================================================

class VariantChoice(BaseModel):
    """
    Section chosen for one slot.

    posterior_mean is the chosen arm's alpha / (alpha + beta), unrelated to
    ClassificationResult.segment_confidence.
    """
    slot: str
    variant_id: str
    section: Dict[str, Any]
    posterior_mean: float = Field(..., ge=0.0, le=1.0)
    is_new: bool = False


class ArmPerformance(BaseModel):
    variant_id: str
    alpha: int
    beta: int
    conversion_rate: float
    confidence_interval: Tuple[float, float]
    trials: int


class SectionPerformance(BaseModel):
    scope: str
    slot: str
    arms: List[ArmPerformance] = Field(default_factory=list)
    best_variant_id: Optional[str] = None
    total_trials: int = 0
    expected_regret: float = 0.0


class TimeoutSweepResult(BaseModel):
    scope: str
    window_minutes: float
    arms_checked: int = 0
    arms_penalized: int = 0
    arms_skipped: int = Field(0, description="Already penalized in this time bucket")
    arms_failed: int = Field(0, description="Penalty could not be applied; retried next sweep")


# ============================================================================
# Storyboards
# ============================================================================

class Storyboard(BaseModel):
    """
    A persona-targeted page document.

    Sections are opaque; each carries a "key" naming its slot.
    """
    version: int = 1
    brand: Dict[str, Any] = Field(default_factory=dict)
    persona: Segment = DEFAULT_SEGMENT
    sections: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("sections")
    @classmethod
    def sections_have_keys(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for section in v:
            if not isinstance(section.get("key"), str) or not section["key"]:
                raise ValueError("Every section needs a non-empty string 'key'")
        return v


class AssembledStoryboard(BaseModel):
    storyboard: Storyboard
    variant_ids_by_slot: Dict[str, str] = Field(default_factory=dict)
