from __future__ import annotations

import logging
import uuid
from typing import Optional, Union

from pydantic import ValidationError

from nullspace.errors import DecryptionError, NotFoundError, StorageError
from nullspace.models.notes import Note
from nullspace.storage.file_storage import FileStorage
from nullspace.storage.search_index import SearchEngine
from nullspace.utils.encryption import EncryptionManager

logger = logging.getLogger(__name__)

NOTES_DIR = "notes"

NoteId = Union[uuid.UUID, str]


def _note_id(note_id: NoteId) -> uuid.UUID:
    try:
        return note_id if isinstance(note_id, uuid.UUID) else uuid.UUID(str(note_id))
    except ValueError:
        raise ValueError("Invalid note_id") from None


def _note_path(note_id: uuid.UUID) -> str:
    return f"{NOTES_DIR}/{note_id}.json"


class NotesStore:
    """Encrypted notes of one unlocked vault, one file per note.

    Files live under ``notes/`` of the vault's storage root and hold
    ``nonce||ct||tag`` blobs. When a search engine is attached every change is
    mirrored into the index and committed.
    """

    def __init__(self, storage: FileStorage, encryption: EncryptionManager, search: Optional[SearchEngine] = None):
        self.storage = storage
        self.encryption = encryption
        self.search = search

    def _write(self, note: Note) -> None:
        self.storage.write_file(_note_path(note.id), self.encryption.encrypt(note.to_json_bytes()))

    def _read(self, path: str) -> Note:
        plain = self.encryption.decrypt(self.storage.read_file(path))
        try:
            return Note.from_json_bytes(plain)
        except ValidationError as exc:
            raise StorageError(f"Corrupted note file: {path}", path=path) from exc

    def _index(self, note: Note) -> None:
        if self.search is None:
            return
        with self.search.writer() as w:
            self.search.index_note(w, note.id, note.title, note.content, note.tags, note.created_at, note.updated_at)
            self.search.commit(w)

    def create_note(self, title: str, content: str, tags: Optional[list[str]] = None) -> Note:
        note = Note.new(title, content, tags)
        self._write(note)
        self._index(note)
        logger.debug("Created note %s", note.id)
        return note

    def save_note(self, note: Note) -> Note:
        """Persist ``note`` as it is (id, version and timestamps kept)."""
        self._write(note)
        self._index(note)
        return note

    def get_note(self, note_id: NoteId) -> Note | None:
        path = _note_path(_note_id(note_id))
        if not self.storage.exists(path):
            return None
        return self._read(path)

    def update_note(self, note_id: NoteId, title: str, content: str, tags: list[str]) -> Note | None:
        note = self.get_note(note_id)
        if note is None:
            return None
        note.update(title, content, tags)
        self._write(note)
        self._index(note)
        return note

    def delete_note(self, note_id: NoteId) -> bool:
        nid = _note_id(note_id)
        try:
            self.storage.delete_file(_note_path(nid))
        except NotFoundError:
            return False
        if self.search is not None:
            with self.search.writer() as w:
                self.search.delete_note(w, nid)
                self.search.commit(w)
        return True

    def list_notes(self, skip_corrupt: bool = False) -> list[Note]:
        out: list[Note] = []
        for path in self.storage.list_files(NOTES_DIR):
            if not path.endswith(".json"):
                continue
            try:
                out.append(self._read(path))
            except (DecryptionError, StorageError):
                if not skip_corrupt:
                    raise
                logger.warning("Skipping unreadable note file %s", path)
        return out

    def reindex(self) -> int:
        """Rebuild the attached index from the note files; returns the count."""
        if self.search is None:
            raise ValueError("No search engine attached")
        notes = self.list_notes()
        with self.search.writer() as w:
            self.search.clear(w)
            for note in notes:
                self.search.index_note(
                    w, note.id, note.title, note.content, note.tags, note.created_at, note.updated_at
                )
            self.search.commit(w)
        logger.info("Reindexed %d notes", len(notes))
        return len(notes)
