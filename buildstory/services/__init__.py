"""
Services layer for the BuildStory decision engine.

Separates request-time classification (PersonaClassifier), the bandit core
(VariantBandit), storage (BanditStateStore) and orchestration
(ExperimentStrategist, StoryboardAssembler).
"""

from .models import (
    Segment,
    DEFAULT_SEGMENT,
    DeviceClass,
    EventKind,
    SignalBundle,
    ClassificationResult,
    ArmState,
    Arm,
    InteractionEvent,
    VariantChoice,
    ArmPerformance,
    SectionPerformance,
    TimeoutSweepResult,
    Storyboard,
    AssembledStoryboard,
)
from .content_hasher import compute_variant_id, compute_document_hash, dedupe_sections
from .persona_classifier import PersonaClassifier, extract_signals, validate_poll_segment
from .variant_bandit import VariantBandit
from .bandit_state_store import (
    BanditStateStore,
    SupabaseBanditStateStore,
    InMemoryBanditStateStore,
)
from .experiment_strategist import ExperimentStrategist
from .storyboard_assembler import StoryboardAssembler
from .event_processor import InteractionEventProcessor

__all__ = [
    # Models
    "Segment",
    "DEFAULT_SEGMENT",
    "DeviceClass",
    "EventKind",
    "SignalBundle",
    "ClassificationResult",
    "ArmState",
    "Arm",
    "InteractionEvent",
    "VariantChoice",
    "ArmPerformance",
    "SectionPerformance",
    "TimeoutSweepResult",
    "Storyboard",
    "AssembledStoryboard",
    # Hashing and classification
    "compute_variant_id",
    "compute_document_hash",
    "dedupe_sections",
    "PersonaClassifier",
    "extract_signals",
    "validate_poll_segment",
    # Bandit
    "VariantBandit",
    "BanditStateStore",
    "SupabaseBanditStateStore",
    "InMemoryBanditStateStore",
    "ExperimentStrategist",
    "StoryboardAssembler",
    "InteractionEventProcessor",
]
