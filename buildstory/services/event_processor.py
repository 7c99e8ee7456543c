"""
Interaction event processing.

Turns client interaction events into stored events and bandit rewards:
- pollPersona with a valid selectedPersona switches the visitor's segment
- ctaClick / conversion with a variant id rewards that arm
- everything is appended to the event log
"""

import logging
from typing import Any, Dict, List, Sequence

from ..core.config import Config
from ..core.errors import InputError
from .bandit_state_store import BanditStateStore
from .experiment_strategist import ExperimentStrategist
from .models import CONVERSION_EVENT_KINDS, EventKind, InteractionEvent, Segment
from .persona_classifier import validate_poll_segment

logger = logging.getLogger(__name__)


class InteractionEventProcessor:
    """Applies tracked events to the event log and the bandit."""

    def __init__(self, store: BanditStateStore, strategist: ExperimentStrategist):
        self.store = store
        self.strategist = strategist

    async def process(self, event: InteractionEvent, segment: Segment) -> Dict[str, Any]:
        """
        Process one event for a visitor currently classified as segment.

        Returns:
            {"persona_update": Segment} for an accepted poll answer,
            otherwise {"success": True}
        """
        segment = Segment(segment)

        if event.kind == EventKind.POLL_PERSONA:
            selected = validate_poll_segment(event.metadata.get("selectedPersona"))
            if selected is not None:
                await self.store.append_event(event.model_copy(update={
                    "segment": selected,
                    "metadata": {**event.metadata, "previousPersona": segment.value},
                }))
                logger.info(f"Visitor on {event.scope} switched {segment.value} -> {selected.value}")
                return {"persona_update": selected}

        if event.kind in CONVERSION_EVENT_KINDS and event.variant_id:
            await self.strategist.record_conversion(
                event.scope, event.slot, event.variant_id, reward=1, segment=segment,
            )

        await self.store.append_event(event.model_copy(update={"segment": segment}))
        return {"success": True}

    async def process_batch(
        self, events: Sequence[InteractionEvent], segment: Segment,
    ) -> Dict[str, Any]:
        """
        Process up to MAX_EVENT_BATCH events in order.

        A failing event is logged and reported in its result entry; the rest
        of the batch still runs.

        Raises:
            InputError: More events than MAX_EVENT_BATCH
        """
        if len(events) > Config.MAX_EVENT_BATCH:
            raise InputError(
                f"Batch of {len(events)} events exceeds limit of {Config.MAX_EVENT_BATCH}"
            )

        results: List[Dict[str, Any]] = []
        for event in events:
            try:
                result = await self.process(event, segment)
                results.append({**result, "event": event.kind.value})
            except Exception as e:
                logger.error(f"Error processing {event.kind.value} event for {event.scope}: {e}")
                results.append({"error": "Failed to process event", "event": event.kind.value})

        return {"success": True, "results": results, "processed": len(results)}
