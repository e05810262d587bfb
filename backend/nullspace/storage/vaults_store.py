from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from nullspace import config
from nullspace.errors import DecryptionError, KeyDerivationError, NotFoundError, StorageError
from nullspace.models.notes import Note, utc_now
from nullspace.models.vaults import Vault
from nullspace.storage.file_storage import FileStorage
from nullspace.storage.notes_store import NOTES_DIR, NotesStore
from nullspace.storage.search_index import SearchEngine
from nullspace.utils.auth_hash import hash_password, verify_password
from nullspace.utils.encryption import EncryptionManager

logger = logging.getLogger(__name__)

VAULTS_DIR = "vaults"
VAULT_FILE = "vault.json"
INDEX_DIR = "index"
IMPORTED_SUFFIX = " (imported)"

VaultId = Union[uuid.UUID, str]


def _vault_id(vault_id: VaultId) -> uuid.UUID:
    try:
        return vault_id if isinstance(vault_id, uuid.UUID) else uuid.UUID(str(vault_id))
    except ValueError:
        raise ValueError("Invalid vault_id") from None


def _vault_dir(vault_id: VaultId) -> str:
    return f"{VAULTS_DIR}/{_vault_id(vault_id)}"


@dataclass(frozen=True)
class VaultRecord:
    vault: Vault
    password_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {"vault": self.vault.model_dump(mode="json"), "password_hash": self.password_hash}


class VaultsStore:
    """Vault records and per-vault directories under ``<base_dir>/vaults``."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else config.data_dir()
        self.storage = FileStorage(self.base_dir)

    def _record_path(self, vault_id: VaultId) -> str:
        return f"{_vault_dir(vault_id)}/{VAULT_FILE}"

    def _get_record(self, vault_id: VaultId) -> VaultRecord | None:
        p = self._record_path(vault_id)
        if not self.storage.exists(p):
            return None
        try:
            raw = json.loads(self.storage.read_file(p).decode("utf-8"))
            return VaultRecord(vault=Vault.model_validate(raw["vault"]), password_hash=raw["password_hash"])
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise StorageError(f"Corrupted vault record: {p}", path=p) from exc

    def _put_record(self, rec: VaultRecord) -> None:
        data = json.dumps(rec.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        self.storage.write_file(self._record_path(rec.vault.id), data)

    def _init_dirs(self, vault_id: uuid.UUID) -> None:
        base = _vault_dir(vault_id)
        self.storage.create_dir(f"{base}/{NOTES_DIR}")
        self.storage.create_dir(f"{base}/{INDEX_DIR}")

    def create_vault(self, name: str, description: str, password: str) -> Vault:
        if not password:
            raise KeyDerivationError("Password must be a non-empty string")
        vault = Vault.new(name, description, EncryptionManager.generate_salt())
        self._put_record(VaultRecord(vault=vault, password_hash=hash_password(password)))
        self._init_dirs(vault.id)
        logger.info("Created vault %s", vault.id)
        return vault

    def get_vault(self, vault_id: VaultId) -> Vault | None:
        rec = self._get_record(vault_id)
        return rec.vault if rec else None

    def list_vaults(self) -> list[Vault]:
        out: list[Vault] = []
        for path in self.storage.list_files(VAULTS_DIR):
            parts = path.split("/")
            if len(parts) != 3 or parts[2] != VAULT_FILE:
                continue
            try:
                rec = self._get_record(parts[1])
            except ValueError:
                logger.warning("Ignoring unexpected vault directory %s", parts[1])
                continue
            if rec is not None:
                out.append(rec.vault)
        return sorted(out, key=lambda v: (v.created_at, str(v.id)))

    def update_vault(
        self, vault_id: VaultId, name: Optional[str] = None, description: Optional[str] = None
    ) -> Vault | None:
        rec = self._get_record(vault_id)
        if rec is None:
            return None
        rec.vault.update(name=name, description=description)
        self._put_record(rec)
        return rec.vault

    def delete_vault(self, vault_id: VaultId) -> bool:
        try:
            self.storage.delete_dir(_vault_dir(vault_id))
        except NotFoundError:
            return False
        logger.info("Deleted vault %s", vault_id)
        return True

    def unlock(self, vault_id: VaultId, password: str) -> EncryptionManager:
        """Check ``password`` against the stored verifier and derive the vault key."""
        rec = self._get_record(vault_id)
        if rec is None:
            raise NotFoundError(self._record_path(vault_id))
        if not verify_password(password, rec.password_hash):
            raise DecryptionError()
        return EncryptionManager.new_from_password(password, rec.vault.salt)

    def vault_storage(self, vault_id: VaultId) -> FileStorage:
        return FileStorage(self.storage.resolve(_vault_dir(vault_id)))

    def search_engine(self, vault_id: VaultId) -> SearchEngine:
        return SearchEngine(self.storage.resolve(f"{_vault_dir(vault_id)}/{INDEX_DIR}"))

    def notes(
        self, vault_id: VaultId, encryption: EncryptionManager, search: Optional[SearchEngine] = None
    ) -> NotesStore:
        if self.get_vault(vault_id) is None:
            raise NotFoundError(self._record_path(vault_id))
        return NotesStore(self.vault_storage(vault_id), encryption, search)

    def adopt(self, vault: Vault, notes: Iterable[Note], password: str) -> Vault:
        """Persist an imported vault and its notes under ``password``.

        A vault whose id is already taken is stored under a fresh id and salt
        with " (imported)" appended to its name. The vault record is written
        last; if anything fails before that, the new vault directory is removed.
        """
        if not password:
            raise KeyDerivationError("Password must be a non-empty string")
        if self.get_vault(vault.id) is not None:
            name = vault.name[: 200 - len(IMPORTED_SUFFIX)] + IMPORTED_SUFFIX
            vault = Vault(
                name=name,
                description=vault.description,
                created_at=vault.created_at,
                updated_at=utc_now(),
                salt=EncryptionManager.generate_salt(),
            )
        base = _vault_dir(vault.id)
        try:
            self._init_dirs(vault.id)
            with EncryptionManager.new_from_password(password, vault.salt) as enc:
                store = NotesStore(self.vault_storage(vault.id), enc)
                for note in notes:
                    store.save_note(note)
                # one writer session for the whole batch
                store.search = self.search_engine(vault.id)
                count = store.reindex()
            self._put_record(VaultRecord(vault=vault, password_hash=hash_password(password)))
        except BaseException:
            if self.storage.exists(base):
                self.storage.delete_dir(base)
            raise
        logger.info("Adopted vault %s with %d notes", vault.id, count)
        return vault
