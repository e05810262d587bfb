"""Plain-value entry points for a host application (UI shell, FFI, RPC).

Every function returns an envelope instead of raising::

    {"ok": True, "value": ...}
    {"ok": False, "error": {"kind": "...", "message": "...", ...}}

Records go in and come out as JSON-compatible dicts.
"""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from nullspace.errors import NullSpaceError
from nullspace.models.notes import Note
from nullspace.models.vaults import Vault
from nullspace.storage.search_index import SearchEngine
from nullspace.storage.vault_manager import VaultManager
from nullspace.utils.encryption import EncryptionManager

logger = logging.getLogger(__name__)

Envelope = dict[str, Any]


def _ok(value: Any) -> Envelope:
    return {"ok": True, "value": value}


def _error(kind: str, message: str, **details: Any) -> Envelope:
    return {"ok": False, "error": {"kind": kind, "message": message, **details}}


def boundary(fn: Callable[..., Any]) -> Callable[..., Envelope]:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Envelope:
        try:
            return _ok(fn(*args, **kwargs))
        except NullSpaceError as exc:
            logger.info("%s failed: %s", fn.__name__, exc.kind)
            return {"ok": False, "error": exc.to_dict()}
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            return _error("invalid_input", f"{exc.error_count()} validation error(s)", errors=errors)
        except (ValueError, TypeError) as exc:
            return _error("invalid_input", str(exc))

    return wrapper


def _note_dump(note: Note) -> dict[str, Any]:
    return note.model_dump(mode="json")


def _notes(records: Iterable[Any]) -> list[Note]:
    return [Note.model_validate(r) for r in records]


@boundary
def generate_salt() -> str:
    return EncryptionManager.generate_salt()


@boundary
def encrypt(data: str, password: str, salt: str) -> str:
    """Encrypt a UTF-8 string; returns base64 of ``nonce||ct||tag``."""
    with EncryptionManager.new_from_password(password, salt) as enc:
        return enc.encrypt_text(data)


@boundary
def decrypt(data_b64: str, password: str, salt: str) -> str:
    with EncryptionManager.new_from_password(password, salt) as enc:
        return enc.decrypt_text(data_b64)


@boundary
def create_note(title: str, content: str, tags: Optional[list[str]] = None) -> dict[str, Any]:
    return _note_dump(Note.new(title, content, tags))


@boundary
def update_note(
    note: dict[str, Any],
    title: Optional[str] = None,
    content: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Apply an edit to a note record; omitted fields keep their value."""
    current = Note.model_validate(note)
    current.update(
        current.title if title is None else title,
        current.content if content is None else content,
        current.tags if tags is None else tags,
    )
    return _note_dump(current)


@boundary
def search(index_path: str, query: str, limit: Optional[int] = None) -> list[list[Any]]:
    engine = SearchEngine(index_path, create=False)
    return [[score, note_id] for score, note_id in engine.search(query, limit)]


@boundary
def export_vault(
    vault: dict[str, Any],
    notes: list[dict[str, Any]],
    output_path: str,
    password: Optional[str] = None,
) -> str:
    v = Vault.model_validate(vault)
    note_list = _notes(notes)
    manager = VaultManager()
    if password is None:
        return str(manager.export_vault(v, note_list, output_path))
    with EncryptionManager.new_from_password(password, v.salt) as enc:
        return str(manager.export_vault(v, note_list, output_path, enc))


@boundary
def import_vault(
    input_path: str,
    password: Optional[str] = None,
    existing_notes: Iterable[dict[str, Any]] = (),
    resolution: str = "keep_both",
) -> dict[str, Any]:
    manager = VaultManager()
    existing = _notes(existing_notes)
    salt = manager.read_salt(input_path)
    if salt is None or password is None:
        vault, merged = manager.import_vault(input_path, None, resolution, existing)
    else:
        with EncryptionManager.new_from_password(password, salt) as enc:
            vault, merged = manager.import_vault(input_path, enc, resolution, existing)
    return {"vault": vault.model_dump(mode="json"), "notes": [_note_dump(n) for n in merged]}


@boundary
def detect_conflicts(existing: list[dict[str, Any]], imported: list[dict[str, Any]]) -> list[dict[str, Any]]:
    pairs = VaultManager.detect_conflicts(_notes(existing), _notes(imported))
    return [{"existing": _note_dump(e), "imported": _note_dump(i)} for e, i in pairs]
