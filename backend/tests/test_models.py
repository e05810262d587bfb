import time
import uuid
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from nullspace.models.notes import Note, Tag, validate_tag_path
from nullspace.models.vaults import ConflictResolution, Vault, VaultMetadata


def test_note_new_stamps_identity_and_version():
    note = Note.new("Title", "Body", ["work/project"])
    assert isinstance(note.id, uuid.UUID)
    assert note.id.version == 4
    assert note.created_at == note.updated_at
    assert note.version == 1
    assert note.tags == ["work/project"]


def test_note_new_ids_are_unique():
    assert Note.new("a", "").id != Note.new("a", "").id


def test_note_update_bumps_version_and_keeps_identity():
    note = Note.new("Title", "Body", ["a"])
    note_id, created = note.id, note.created_at
    before = note.updated_at
    time.sleep(0.001)

    note.update("New", "New body", ["b", "c/d"])

    assert note.id == note_id
    assert note.created_at == created
    assert note.title == "New"
    assert note.content == "New body"
    assert note.tags == ["b", "c/d"]
    assert note.version == 2
    assert note.updated_at >= before


def test_note_update_with_bad_tags_changes_nothing():
    note = Note.new("Title", "Body", ["a"])
    with pytest.raises(ValidationError):
        note.update("Other", "Other", ["ok", "bad/"])
    assert note.title == "Title"
    assert note.tags == ["a"]
    assert note.version == 1


def test_note_id_and_created_at_are_frozen():
    note = Note.new("t", "c")
    with pytest.raises(ValidationError):
        note.id = uuid.uuid4()
    with pytest.raises(ValidationError):
        note.created_at = datetime.now(timezone.utc)


def test_note_rejects_duplicate_tags():
    with pytest.raises(ValidationError):
        Note.new("t", "c", ["x", "x"])


def test_note_json_round_trip_keeps_fields():
    note = Note.new("Ocean", "waves", ["nature/sea"])
    back = Note.from_json_bytes(note.to_json_bytes())
    assert back == note


def test_naive_timestamps_are_treated_as_utc():
    note = Note(title="t", created_at=datetime(2024, 1, 1, 12, 0), updated_at=datetime(2024, 1, 1, 12, 0))
    assert note.created_at.tzinfo is not None
    assert note.created_at.utcoffset().total_seconds() == 0


def test_tag_from_path_nested():
    tag = Tag.from_path("a/b/c")
    assert tag.name == "c"
    assert tag.parent == "a/b"
    assert tag.ancestors() == ["a", "a/b"]


def test_tag_from_path_root():
    tag = Tag.from_path("a")
    assert tag.name == "a"
    assert tag.parent is None
    assert tag.ancestors() == []


@pytest.mark.parametrize("bad", ["", "/a", "a/", "a//b"])
def test_invalid_tag_paths_rejected(bad):
    with pytest.raises(ValueError):
        validate_tag_path(bad)


def test_note_tag_views():
    note = Note.new("t", "c", ["work/project/urgent", "home"])
    views = note.tag_views()
    assert [v.name for v in views] == ["urgent", "home"]
    assert views[0].parent == "work/project"


def test_vault_new_and_update():
    vault = Vault.new("Personal", "my notes", "c2FsdHNhbHRzYWx0c2FsdA")
    assert vault.id.version == 4
    assert vault.created_at == vault.updated_at
    vault.update(name="Renamed")
    assert vault.name == "Renamed"
    assert vault.description == "my notes"
    assert vault.updated_at >= vault.created_at


def test_vault_name_must_not_be_empty():
    with pytest.raises(ValidationError):
        Vault.new("", "", "c2FsdHNhbHRzYWx0c2FsdA")


def test_vault_metadata_defaults():
    vault = Vault.new("v", "", "c2FsdHNhbHRzYWx0c2FsdA")
    meta = VaultMetadata(vault=vault, note_count=2)
    assert meta.version == "1.0"
    assert meta.note_count == 2


def test_conflict_resolution_accepts_strings():
    assert ConflictResolution("keep_both") is ConflictResolution.KEEP_BOTH
    with pytest.raises(ValueError):
        ConflictResolution("newest_wins")
