"""
Tests for InteractionEventProcessor - poll answers, conversions and batches.
"""

import pytest
from unittest.mock import AsyncMock

from buildstory.core.errors import InputError
from buildstory.services.bandit_state_store import InMemoryBanditStateStore
from buildstory.services.event_processor import InteractionEventProcessor
from buildstory.services.experiment_strategist import ExperimentStrategist
from buildstory.services.models import EventKind, InteractionEvent, Segment


STORY_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def store():
    return InMemoryBanditStateStore()


@pytest.fixture
def processor(store):
    return InteractionEventProcessor(store, ExperimentStrategist(store))


def _event(kind, **kwargs):
    return InteractionEvent(scope=STORY_ID, slot=kwargs.pop("slot", "hero"), kind=kind, **kwargs)


class TestProcess:
    @pytest.mark.asyncio
    async def test_poll_answer_switches_segment(self, store, processor):
        event = _event(EventKind.POLL_PERSONA, metadata={"selectedPersona": "Outdoor"})

        result = await processor.process(event, Segment.COMMUTER)

        assert result == {"persona_update": Segment.OUTDOOR}
        stored, = store.events
        assert stored.segment == Segment.OUTDOOR
        assert stored.metadata["previousPersona"] == "commuter"

    @pytest.mark.asyncio
    async def test_invalid_poll_answer_is_plain_event(self, store, processor):
        event = _event(EventKind.POLL_PERSONA, metadata={"selectedPersona": "wizard"})

        result = await processor.process(event, Segment.ATHLETE)

        assert result == {"success": True}
        assert store.events[0].segment == Segment.ATHLETE

    @pytest.mark.asyncio
    async def test_cta_click_rewards_variant(self, store, processor):
        await store.ensure_arm_state(STORY_ID, "hero", "v1")

        result = await processor.process(_event(EventKind.CTA_CLICK, variant_id="v1"), Segment.ATHLETE)

        assert result == {"success": True}
        assert (await store.get_arm_state(STORY_ID, "hero", "v1")).alpha == 2
        assert [e.kind for e in store.events] == [EventKind.CONVERSION, EventKind.CTA_CLICK]

    @pytest.mark.asyncio
    async def test_conversion_without_variant_only_logged(self, store, processor):
        await processor.process(_event(EventKind.CONVERSION), Segment.FAMILY)
        assert store.arms == {}
        assert [e.kind for e in store.events] == [EventKind.CONVERSION]

    @pytest.mark.asyncio
    async def test_view_is_appended(self, store, processor):
        await processor.process(_event(EventKind.VIEW, slot="page", variant_id="v1"), Segment.COMMUTER)
        assert store.events[0].kind == EventKind.VIEW
        assert store.arms == {}


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_failures_reported_per_event(self, store):
        strategist = ExperimentStrategist(store)
        strategist.record_conversion = AsyncMock(side_effect=RuntimeError("db down"))
        processor = InteractionEventProcessor(store, strategist)

        events = [
            _event(EventKind.VIEW),
            _event(EventKind.CTA_CLICK, variant_id="v1"),
            _event(EventKind.DWELL, metadata={"ms": 4000}),
        ]
        result = await processor.process_batch(events, Segment.COMMUTER)

        assert result["processed"] == 3
        assert result["results"][0] == {"success": True, "event": "view"}
        assert result["results"][1] == {"error": "Failed to process event", "event": "ctaClick"}
        assert result["results"][2] == {"success": True, "event": "dwell"}
        assert [e.kind for e in store.events] == [EventKind.VIEW, EventKind.DWELL]

    @pytest.mark.asyncio
    async def test_batch_limit(self, processor):
        events = [_event(EventKind.VIEW) for _ in range(11)]
        with pytest.raises(InputError, match="exceeds limit"):
            await processor.process_batch(events, Segment.COMMUTER)
