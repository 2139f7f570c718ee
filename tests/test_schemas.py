"""Tests for request parsing helpers and pydantic schemas."""

import pytest
from pydantic import ValidationError

from api.enums import VideoStatus
from api.schemas import (
    PropertyCreate,
    PropertyResponse,
    VideoAsset,
    parse_json_field,
    parse_key_list,
    parse_replace_map,
)


class TestParseJsonField:
    """Multipart fields may arrive as JSON text or already decoded."""

    def test_none_returns_default(self):
        assert parse_json_field(None, "replaceMap", default={}) == {}

    def test_blank_string_returns_default(self):
        assert parse_json_field("   ", "removedImages", default=[]) == []

    def test_json_string_is_decoded(self):
        assert parse_json_field('["a", "b"]', "removedImages") == ["a", "b"]

    def test_decoded_value_passes_through(self):
        value = {"old": "new.jpg"}
        assert parse_json_field(value, "replaceMap") is value

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="replaceMap must be valid JSON"):
            parse_json_field("{not json", "replaceMap")


class TestParseReplaceMap:
    """Tests for the replaceMap form field."""

    def test_object_form(self):
        pairs = parse_replace_map('{"properties/p1/images/1-front.jpg": "front-new.jpg"}')

        assert len(pairs) == 1
        assert pairs[0].old_key == "properties/p1/images/1-front.jpg"
        assert pairs[0].new_file_name == "front-new.jpg"

    def test_list_form_camel_case(self):
        pairs = parse_replace_map([{"oldKey": "k1", "newFileName": "a.jpg"}, {"oldKey": "k2", "newFileName": "b.jpg"}])

        assert [(p.old_key, p.new_file_name) for p in pairs] == [("k1", "a.jpg"), ("k2", "b.jpg")]

    def test_list_form_snake_case(self):
        pairs = parse_replace_map('[{"old_key": "k1", "new_file_name": "a.jpg"}]')

        assert pairs[0].old_key == "k1"

    def test_missing_value_is_empty(self):
        assert parse_replace_map(None) == []
        assert parse_replace_map("") == []

    def test_entry_without_key_fails(self):
        with pytest.raises(ValueError):
            parse_replace_map([{"newFileName": "a.jpg"}])

    def test_non_object_entry_fails(self):
        with pytest.raises(ValueError, match="entries must be objects"):
            parse_replace_map(["k1"])

    def test_scalar_fails(self):
        with pytest.raises(ValueError, match="object or a list"):
            parse_replace_map("42")


class TestParseKeyList:
    """Tests for removedImages / removedVideos."""

    def test_json_list(self):
        assert parse_key_list('["k1", "k2"]', "removedImages") == ["k1", "k2"]

    def test_single_string_value(self):
        """A bare JSON string is treated as a one-element list."""
        assert parse_key_list('"k1"', "removedImages") == ["k1"]

    def test_empty_entries_dropped(self):
        assert parse_key_list(["k1", ""], "removedVideos") == ["k1"]

    def test_missing_is_empty(self):
        assert parse_key_list(None, "removedVideos") == []

    def test_non_string_entries_fail(self):
        with pytest.raises(ValueError, match="removedVideos must be a list of strings"):
            parse_key_list("[1, 2]", "removedVideos")


class TestPropertyCreate:
    """Tests for PropertyCreate validation."""

    def test_valid(self):
        prop = PropertyCreate(title=" Harbour View Loft ", description="Two bedrooms", price=450000)

        assert prop.title == "Harbour View Loft"
        assert prop.price == 450000

    def test_minimal(self):
        prop = PropertyCreate(title="Garden Flat")

        assert prop.description == ""
        assert prop.price is None

    def test_blank_title_fails(self):
        with pytest.raises(ValidationError):
            PropertyCreate(title="   ")

    def test_title_too_long_fails(self):
        with pytest.raises(ValidationError):
            PropertyCreate(title="x" * 101)

    def test_negative_price_fails(self):
        with pytest.raises(ValidationError):
            PropertyCreate(title="Garden Flat", price=-1)


class TestVideoAsset:
    """Tests for the persisted video slot model."""

    def _asset(self, **overrides):
        data = {
            "id": 1,
            "property_id": "p1",
            "status": VideoStatus.COMPLETED,
            "master_key": "properties/p1/videos/master.m3u8",
            "thumbnail_key": "properties/p1/videos/thumbnails/tour-1a2b.jpg",
            "quality_keys": {"480p": "properties/p1/videos/480p.m3u8"},
        }
        data.update(overrides)
        return VideoAsset(**data)

    def test_quality_keys_decoded_from_text(self):
        asset = self._asset(quality_keys='{"720p": "properties/p1/videos/720p.m3u8"}')

        assert asset.quality_keys == {"720p": "properties/p1/videos/720p.m3u8"}

    def test_empty_quality_keys_text_is_none(self):
        assert self._asset(quality_keys="").quality_keys is None

    def test_status_from_string(self):
        assert self._asset(status="failed").status == VideoStatus.FAILED

    def test_is_published(self):
        assert self._asset().is_published is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": VideoStatus.QUEUED},
            {"master_key": None},
            {"thumbnail_key": None},
            {"quality_keys": {}},
        ],
    )
    def test_not_published(self, overrides):
        assert self._asset(**overrides).is_published is False


class TestPropertyResponse:
    def test_null_description_becomes_empty(self):
        response = PropertyResponse(id="p1", title="Garden Flat", description=None)

        assert response.description == ""
        assert response.images == []
        assert response.videos == []
