"""
StoryboardAssembler - builds the page a visitor sees.

For each section of the base storyboard, the slot's candidates are the base
section plus every historical section with the same key saved for the
(scope, segment). Slots are resolved concurrently through the strategist;
a slot that fails for any reason keeps its base section, so a complete page
is returned even when storage is down.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..core.errors import StorageError
from ..core.observability import get_logfire
from .bandit_state_store import BanditStateStore
from .content_hasher import dedupe_sections
from .experiment_strategist import ExperimentStrategist
from .models import (
    AssembledStoryboard,
    Segment,
    Storyboard,
    VariantChoice,
)

logger = logging.getLogger(__name__)

# Order tried when a segment has no saved storyboard of its own
BASE_STORYBOARD_FALLBACK_ORDER = (
    Segment.COMMUTER,
    Segment.ATHLETE,
    Segment.OUTDOOR,
    Segment.FAMILY,
)


class StoryboardAssembler:
    """Per-request fan-out over a storyboard's slots."""

    def __init__(self, store: BanditStateStore, strategist: Optional[ExperimentStrategist] = None):
        self.store = store
        self.strategist = strategist or ExperimentStrategist(store)
        self._lf = get_logfire()

    async def load_base_storyboard(self, scope: str, segment: Segment) -> Optional[Storyboard]:
        """Latest storyboard for the segment, else the latest for any other segment."""
        order = [Segment(segment)] + [s for s in BASE_STORYBOARD_FALLBACK_ORDER if s != segment]
        for candidate in order:
            storyboard = await self.store.get_latest_document(scope, candidate)
            if storyboard is not None:
                if candidate != segment:
                    logger.info(f"No storyboard for {scope}/{Segment(segment).value}, using {candidate.value}")
                return storyboard
        return None

    async def _load_history(self, scope: str, segment: Segment) -> List[Storyboard]:
        try:
            return await self.store.list_document_variants(scope, segment)
        except (StorageError, ValueError) as e:
            logger.warning(f"Could not load storyboard history for {scope}: {e}")
            return []

    async def _resolve_slot(
        self,
        scope: str,
        segment: Segment,
        base_section: Dict[str, Any],
        history: List[Storyboard],
    ) -> VariantChoice:
        slot = base_section["key"]
        historical = [
            section
            for storyboard in history
            for section in storyboard.sections
            if section.get("key") == slot
        ]
        candidates = [section for _, section in dedupe_sections([base_section] + historical)]
        return await self.strategist.choose_optimal_variant(scope, slot, candidates, segment)

    async def assemble(
        self,
        scope: str,
        segment: Segment,
        base_storyboard: Storyboard,
    ) -> AssembledStoryboard:
        """
        Choose one section per slot and return the assembled storyboard.

        Args:
            scope: Story id
            segment: Visitor segment (also set as the storyboard persona)
            base_storyboard: Storyboard whose sections define the slots

        Returns:
            AssembledStoryboard with exactly one section per base section, in
            base order, and the chosen variant id for every slot that resolved
        """
        segment = Segment(segment)
        with self._lf.span("assemble_storyboard", scope=scope, segment=segment.value,
                           slot_count=len(base_storyboard.sections)):
            history = await self._load_history(scope, segment)

            results = await asyncio.gather(
                *[
                    self._resolve_slot(scope, segment, section, history)
                    for section in base_storyboard.sections
                ],
                return_exceptions=True,
            )

            sections: List[Dict[str, Any]] = []
            variant_ids_by_slot: Dict[str, str] = {}
            for base_section, result in zip(base_storyboard.sections, results):
                if isinstance(result, BaseException):
                    logger.error(
                        f"Slot '{base_section['key']}' of {scope} fell back to base section: {result}"
                    )
                    sections.append(base_section)
                    continue
                sections.append(result.section)
                variant_ids_by_slot[result.slot] = result.variant_id

        assembled = base_storyboard.model_copy(update={
            "persona": segment,
            "sections": sections,
        })
        return AssembledStoryboard(storyboard=assembled, variant_ids_by_slot=variant_ids_by_slot)
