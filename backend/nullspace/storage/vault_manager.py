"""Vault archives: export, import and id-conflict reconciliation.

Archive layout (ZIP, deflate)::

    metadata.json          envelope, see below
    notes/<note-id>.json   one entry per note; raw JSON, or nonce||ct||tag when encrypted

``metadata.json`` is always a small JSON envelope. A plain archive carries the
``VaultMetadata`` inline; an encrypted one carries the vault salt in clear
(needed to derive the key) and the metadata as a base64 encrypted payload.
Import decrypts the metadata first, so a wrong password fails before any note
entry is read.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import uuid
import zipfile
import zlib
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

from pydantic import ValidationError

from nullspace.errors import (
    ArchiveCorruptError,
    DecryptionError,
    EncryptionError,
    MetadataMissingError,
    VaultDecryptionError,
    VaultError,
    VaultIoError,
)
from nullspace.models.notes import Note
from nullspace.models.vaults import ARCHIVE_FORMAT_VERSION, ConflictResolution, Vault, VaultMetadata
from nullspace.storage.file_storage import FileStorage
from nullspace.utils.encryption import EncryptionManager
from nullspace.utils.fsutil import atomic_open

logger = logging.getLogger(__name__)

METADATA_ENTRY = "metadata.json"
NOTES_DIR = "notes/"
KDF_NAME = "argon2id"
_NOTE_ENTRY = re.compile(r"^notes/([0-9a-fA-F-]{36})\.json$")


def _fresh_id(taken: set[uuid.UUID]) -> uuid.UUID:
    while True:
        candidate = uuid.uuid4()
        if candidate not in taken:
            return candidate


class VaultManager:
    """Export and import vault archives.

    With a ``FileStorage`` the archive paths are relative to its root and go
    through its traversal checks; without one they are ordinary paths.
    """

    def __init__(self, storage: Optional[FileStorage] = None):
        self.storage = storage

    def _path(self, path: Union[str, Path]) -> Path:
        if self.storage is not None:
            return self.storage.resolve(str(path))
        return Path(path)

    # --- export ---

    def export_vault(
        self,
        vault: Vault,
        notes: Sequence[Note],
        output_path: Union[str, Path],
        encryption: Optional[EncryptionManager] = None,
    ) -> Path:
        """Write ``vault`` and ``notes`` to a single archive at ``output_path``.

        When ``encryption`` is given it must be derived from ``vault.salt``; the
        salt is written in clear so the archive can be opened with the password
        alone. Nothing is left at ``output_path`` if any stage fails.
        """
        seen: set[uuid.UUID] = set()
        for note in notes:
            if note.id in seen:
                raise VaultError(f"Duplicate note id {note.id}", stage="serialize", note_id=str(note.id))
            seen.add(note.id)

        metadata = VaultMetadata(vault=vault, note_count=len(notes))
        envelope = self._metadata_envelope(metadata, encryption)
        target = self._path(output_path)

        try:
            with atomic_open(target) as f:
                with zipfile.ZipFile(f, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    zf.writestr(METADATA_ENTRY, json.dumps(envelope, ensure_ascii=False, indent=2))
                    for note in notes:
                        zf.writestr(f"{NOTES_DIR}{note.id}.json", self._seal_note(note, encryption))
        except OSError as exc:
            raise VaultIoError(f"Cannot write archive: {exc}", stage="write", path=str(target)) from exc

        logger.info("Exported vault %s with %d notes (encrypted=%s)", vault.id, len(notes), encryption is not None)
        return target

    def _metadata_envelope(self, metadata: VaultMetadata, encryption: Optional[EncryptionManager]) -> dict[str, Any]:
        if encryption is None:
            return {
                "format_version": ARCHIVE_FORMAT_VERSION,
                "encrypted": False,
                "metadata": metadata.model_dump(mode="json"),
            }
        try:
            blob = encryption.encrypt(metadata.model_dump_json().encode("utf-8"))
        except EncryptionError as exc:
            raise VaultError(f"Cannot encrypt metadata: {exc.message}", stage="encrypt") from exc
        return {
            "format_version": ARCHIVE_FORMAT_VERSION,
            "encrypted": True,
            "kdf": KDF_NAME,
            "salt": metadata.vault.salt,
            "payload": base64.b64encode(blob).decode("ascii"),
        }

    @staticmethod
    def _seal_note(note: Note, encryption: Optional[EncryptionManager]) -> bytes:
        data = note.to_json_bytes()
        if encryption is None:
            return data
        try:
            return encryption.encrypt(data)
        except EncryptionError as exc:
            raise VaultError(f"Cannot encrypt note: {exc.message}", stage="encrypt", note_id=str(note.id)) from exc

    # --- import ---

    def _open(self, path: Path) -> zipfile.ZipFile:
        try:
            return zipfile.ZipFile(path)
        except FileNotFoundError:
            raise VaultIoError(f"Archive not found: {path}", stage="open", path=str(path)) from None
        except zipfile.BadZipFile as exc:
            raise ArchiveCorruptError(f"Not a vault archive: {exc}", stage="open", path=str(path)) from exc
        except OSError as exc:
            raise VaultIoError(f"Cannot open archive: {exc}", stage="open", path=str(path)) from exc

    @staticmethod
    def _read_entry(zf: zipfile.ZipFile, name: str, stage: str) -> bytes:
        try:
            return zf.read(name)
        except KeyError:
            raise MetadataMissingError(f"Archive has no {name}", stage=stage) from None
        except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError) as exc:
            raise ArchiveCorruptError(f"Unreadable entry {name}: {exc}", stage=stage, entry=name) from exc
        except OSError as exc:
            raise VaultIoError(f"Cannot read entry {name}: {exc}", stage=stage, entry=name) from exc

    @staticmethod
    def _envelope(zf: zipfile.ZipFile) -> dict[str, Any]:
        raw = VaultManager._read_entry(zf, METADATA_ENTRY, "metadata")
        try:
            envelope = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ArchiveCorruptError("metadata.json is not valid JSON", stage="metadata") from exc
        if not isinstance(envelope, dict):
            raise ArchiveCorruptError("metadata.json is not an object", stage="metadata")
        version = envelope.get("format_version")
        if version != ARCHIVE_FORMAT_VERSION:
            raise ArchiveCorruptError(f"Unsupported archive format {version!r}", stage="metadata")
        return envelope

    def read_salt(self, input_path: Union[str, Path]) -> Optional[str]:
        """Salt of an encrypted archive, or None for a plain one."""
        with self._open(self._path(input_path)) as zf:
            envelope = self._envelope(zf)
        if not envelope.get("encrypted"):
            return None
        salt = envelope.get("salt")
        if not isinstance(salt, str) or not salt:
            raise ArchiveCorruptError("Encrypted archive has no salt", stage="metadata")
        return salt

    def _open_metadata(self, envelope: dict[str, Any], encryption: Optional[EncryptionManager]) -> VaultMetadata:
        if envelope.get("encrypted"):
            if encryption is None:
                raise VaultDecryptionError("Archive is encrypted; a password is required", stage="metadata")
            try:
                blob = base64.b64decode(envelope.get("payload") or "", validate=True)
            except (binascii.Error, ValueError, TypeError) as exc:
                raise ArchiveCorruptError("Metadata payload is not valid base64", stage="metadata") from exc
            try:
                raw = encryption.decrypt(blob)
            except DecryptionError:
                raise VaultDecryptionError("Decryption failed", stage="metadata") from None
            try:
                return VaultMetadata.model_validate_json(raw)
            except ValidationError as exc:
                raise ArchiveCorruptError("Vault metadata is invalid", stage="metadata") from exc
        if "metadata" not in envelope:
            raise MetadataMissingError("metadata.json has no metadata", stage="metadata")
        try:
            return VaultMetadata.model_validate(envelope["metadata"])
        except ValidationError as exc:
            raise ArchiveCorruptError("Vault metadata is invalid", stage="metadata") from exc

    def _open_note(self, name: str, raw: bytes, encryption: Optional[EncryptionManager]) -> Note:
        if encryption is not None:
            try:
                raw = encryption.decrypt(raw)
            except DecryptionError:
                raise VaultDecryptionError("Decryption failed", stage="notes", entry=name) from None
        try:
            return Note.from_json_bytes(raw)
        except ValidationError as exc:
            raise ArchiveCorruptError(f"Note entry {name} is invalid", stage="notes", entry=name) from exc

    def import_vault(
        self,
        input_path: Union[str, Path],
        encryption: Optional[EncryptionManager] = None,
        conflict_resolution: Union[ConflictResolution, str] = ConflictResolution.KEEP_BOTH,
        existing_notes: Iterable[Note] = (),
    ) -> tuple[Vault, list[Note]]:
        """Read an archive and merge its notes with ``existing_notes``.

        Every note entry must decrypt and validate; any failure aborts the
        whole import. Returns the archived vault and the merged note set.
        """
        resolution = ConflictResolution(conflict_resolution)
        path = self._path(input_path)
        with self._open(path) as zf:
            envelope = self._envelope(zf)
            encrypted = bool(envelope.get("encrypted"))
            metadata = self._open_metadata(envelope, encryption)

            imported: list[Note] = []
            seen: set[uuid.UUID] = set()
            for info in zf.infolist():
                name = info.filename
                if name == METADATA_ENTRY or info.is_dir():
                    continue
                match = _NOTE_ENTRY.match(name)
                if match is None:
                    logger.warning("Ignoring unexpected archive entry %s", name)
                    continue
                raw = self._read_entry(zf, name, "notes")
                note = self._open_note(name, raw, encryption if encrypted else None)
                if str(note.id) != match.group(1).lower():
                    raise ArchiveCorruptError(f"Entry {name} holds note {note.id}", stage="notes", entry=name)
                if note.id in seen:
                    raise ArchiveCorruptError(f"Duplicate note {note.id}", stage="notes", entry=name)
                seen.add(note.id)
                imported.append(note)

        if len(imported) != metadata.note_count:
            raise ArchiveCorruptError(
                f"Archive lists {metadata.note_count} notes but holds {len(imported)}", stage="notes"
            )

        merged = self.merge_notes(existing_notes, imported, resolution)
        logger.info(
            "Imported vault %s: %d notes from archive, %d after merge (%s)",
            metadata.vault.id,
            len(imported),
            len(merged),
            resolution.value,
        )
        return metadata.vault, merged

    # --- conflicts ---

    @staticmethod
    def detect_conflicts(existing_notes: Iterable[Note], imported_notes: Iterable[Note]) -> list[tuple[Note, Note]]:
        """Pairs ``(existing, imported)`` whose ids are equal; nothing else counts."""
        by_id = {note.id: note for note in existing_notes}
        return [(by_id[note.id], note) for note in imported_notes if note.id in by_id]

    @staticmethod
    def resolve_conflict(
        existing: Note,
        imported: Note,
        resolution: Union[ConflictResolution, str],
        taken: Optional[set[uuid.UUID]] = None,
    ) -> list[Note]:
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.OVERWRITE:
            return [imported]
        if resolution is ConflictResolution.SKIP:
            return [existing]
        avoid = {existing.id, imported.id}
        if taken:
            avoid |= taken
        copy = imported.model_copy(update={"id": _fresh_id(avoid)}, deep=True)
        return [existing, copy]

    @classmethod
    def merge_notes(
        cls,
        existing_notes: Iterable[Note],
        imported_notes: Iterable[Note],
        resolution: Union[ConflictResolution, str],
    ) -> list[Note]:
        """Union of non-colliding notes from both sides plus each resolved conflict."""
        existing = list(existing_notes)
        imported = list(imported_notes)
        by_id = {note.id: note for note in existing}
        imported_ids = {note.id for note in imported}
        taken = set(by_id) | imported_ids

        out = [note for note in existing if note.id not in imported_ids]
        for note in imported:
            current = by_id.get(note.id)
            if current is None:
                out.append(note)
                continue
            resolved = cls.resolve_conflict(current, note, resolution, taken)
            taken.update(n.id for n in resolved)
            out.extend(resolved)
        return out
