"""
Tests for content addressing of storyboard sections.
"""

import math
import pytest

from buildstory.core.errors import ContentHashError
from buildstory.services.content_hasher import (
    VARIANT_ID_LENGTH,
    canonical_json,
    compute_document_hash,
    compute_variant_id,
    dedupe_sections,
)
from buildstory.services.models import Segment, Storyboard


HERO = {"key": "hero", "type": "hero", "headline": "Stay cold for 24h", "cta": {"label": "Buy", "href": "/buy"}}


class TestComputeVariantId:
    def test_returns_lowercase_sha256_hex(self):
        variant_id = compute_variant_id(HERO)
        assert len(variant_id) == VARIANT_ID_LENGTH
        assert variant_id == variant_id.lower()
        int(variant_id, 16)

    def test_property_order_does_not_matter(self):
        reordered = {"cta": {"href": "/buy", "label": "Buy"}, "headline": "Stay cold for 24h", "type": "hero", "key": "hero"}
        assert compute_variant_id(HERO) == compute_variant_id(reordered)

    def test_any_field_change_changes_id(self):
        changed = dict(HERO, headline="Stay cold for 12h")
        assert compute_variant_id(HERO) != compute_variant_id(changed)

    def test_nested_change_changes_id(self):
        changed = dict(HERO, cta={"label": "Buy now", "href": "/buy"})
        assert compute_variant_id(HERO) != compute_variant_id(changed)

    def test_non_mapping_rejected(self):
        with pytest.raises(ContentHashError):
            compute_variant_id(["hero"])

    def test_nan_rejected(self):
        with pytest.raises(ContentHashError):
            compute_variant_id({"key": "stats", "value": math.nan})

    def test_unserializable_value_rejected(self):
        with pytest.raises(ContentHashError):
            compute_variant_id({"key": "hero", "tags": {"a", "b"}})

    def test_content_hash_error_is_value_error(self):
        with pytest.raises(ValueError):
            compute_variant_id("not a section")


class TestCanonicalJson:
    def test_compact_sorted_output(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_unicode_kept(self):
        assert canonical_json({"k": "café"}) == '{"k":"café"}'


class TestDedupeSections:
    def test_first_occurrence_wins(self):
        first = {"key": "hero", "headline": "A", "note": 1}
        duplicate = {"note": 1, "headline": "A", "key": "hero"}
        other = {"key": "hero", "headline": "B"}

        result = dedupe_sections([first, duplicate, other])

        assert [section for _, section in result] == [first, other]
        assert result[0][0] == compute_variant_id(first)

    def test_empty_input(self):
        assert dedupe_sections([]) == []


class TestDocumentHash:
    def test_same_document_same_hash(self):
        a = Storyboard(persona=Segment.ATHLETE, sections=[HERO])
        b = Storyboard(persona=Segment.ATHLETE, sections=[dict(HERO)])
        assert compute_document_hash(a) == compute_document_hash(b)

    def test_persona_changes_hash(self):
        a = Storyboard(persona=Segment.ATHLETE, sections=[HERO])
        b = Storyboard(persona=Segment.FAMILY, sections=[HERO])
        assert compute_document_hash(a) != compute_document_hash(b)
