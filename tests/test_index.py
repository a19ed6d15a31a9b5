"""Tests for the change index (remote object id -> version tag)."""

import json
from pathlib import Path

import pytest

from fieldsync.client.index import ChangeIndex


@pytest.fixture
def index(tmp_path: Path) -> ChangeIndex:
    """Create an empty change index."""
    return ChangeIndex(tmp_path)


class TestShouldDownload:
    """Tests for ChangeIndex.should_download."""

    def test_unknown_object(self, index: ChangeIndex) -> None:
        """Objects never recorded are downloaded."""
        assert index.should_download("id1", "v1") is True

    def test_recorded_same_tag(self, index: ChangeIndex) -> None:
        """A matching tag means unchanged."""
        index.record("id1", "v1")
        assert index.should_download("id1", "v1") is False

    def test_recorded_other_tag(self, index: ChangeIndex) -> None:
        """A different tag means changed."""
        index.record("id1", "v1")
        assert index.should_download("id1", "v2") is True

    def test_comparison_is_ordinal(self, index: ChangeIndex) -> None:
        """Tags differing only by case are different."""
        index.record("id1", "ABC")
        assert index.should_download("id1", "abc") is True

    def test_skip_disabled(self, index: ChangeIndex) -> None:
        """With skipping disabled everything is downloaded."""
        index.record("id1", "v1")
        assert index.should_download("id1", "v1", skip_unchanged=False) is True

    @pytest.mark.parametrize("object_id,tag", [("", "v1"), ("id1", ""), ("  ", "v1")])
    def test_blank_identifiers(self, index: ChangeIndex, object_id: str, tag: str) -> None:
        """Blank ids or tags always download."""
        index.record("id1", "v1")
        assert index.should_download(object_id, tag) is True


class TestRecord:
    """Tests for ChangeIndex.record."""

    def test_upsert(self, index: ChangeIndex) -> None:
        """Recording again replaces the tag; one entry per id."""
        index.record("id1", "v1")
        index.record("id1", "v2")
        assert index.get("id1") == "v2"
        assert len(index) == 1

    def test_blank_ignored(self, index: ChangeIndex) -> None:
        """Blank identifiers are not recorded."""
        index.record("", "v1")
        index.record("id1", "")
        assert len(index) == 0


class TestPersistence:
    """Tests for loading and saving the index."""

    def test_save_and_reload(self, tmp_path: Path) -> None:
        """Saved entries are loaded by a new instance."""
        index = ChangeIndex(tmp_path)
        index.record("id1", "v1")
        assert index.save() is True

        reloaded = ChangeIndex(tmp_path)
        assert reloaded.should_download("id1", "v1") is False
        assert json.loads((tmp_path / ".index.json").read_text()) == {"id1": "v1"}

    def test_custom_filename(self, tmp_path: Path) -> None:
        """The index file name is configurable."""
        index = ChangeIndex(tmp_path, "tags.json")
        index.record("id1", "v1")
        index.save()
        assert (tmp_path / "tags.json").exists()

    def test_corrupt_file_starts_empty(self, tmp_path: Path) -> None:
        """A corrupt index resets to an empty map."""
        (tmp_path / ".index.json").write_text("{broken")
        index = ChangeIndex(tmp_path)
        assert len(index) == 0
        assert index.should_download("id1", "v1") is True

    def test_undecodable_file_starts_empty(self, tmp_path: Path) -> None:
        """An index that is not valid UTF-8 resets to empty and can be rewritten."""
        (tmp_path / ".index.json").write_bytes(b"\xff\xfe{\x00garbage")
        index = ChangeIndex(tmp_path)
        assert len(index) == 0

        index.record("id1", "v1")
        assert index.save() is True
        assert ChangeIndex(tmp_path).get("id1") == "v1"

    def test_non_map_file_starts_empty(self, tmp_path: Path) -> None:
        """An index that is not a map resets to empty."""
        (tmp_path / ".index.json").write_text('["id1"]')
        assert len(ChangeIndex(tmp_path)) == 0

    def test_save_failure_reported(self, tmp_path: Path) -> None:
        """A save into an unusable location returns False."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        index = ChangeIndex(blocker)
        index.record("id1", "v1")
        assert index.save() is False
