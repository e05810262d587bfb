"""Typed errors raised by the nullspace core.

Every error carries a stable ``kind`` string so the caller boundary
(``nullspace.api.bridge``) can hand failures across as plain dicts.
"""
from __future__ import annotations

from typing import Any, Optional


class NullSpaceError(Exception):
    kind = "error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        for key, value in self.details.items():
            out[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)
        return out


# --- key / crypto ---


class EncryptionError(NullSpaceError):
    kind = "crypto"


class KeyDerivationError(EncryptionError):
    kind = "key_derivation_failed"


class CipherError(EncryptionError):
    kind = "cipher_failure"


class DecryptionError(EncryptionError):
    # one message for every failure: wrong key and tampered data look the same
    kind = "authentication_failed"

    def __init__(self, message: str = "Decryption failed"):
        super().__init__(message)


# --- storage ---


class StorageError(NullSpaceError):
    kind = "storage"


class PathTraversalError(StorageError):
    kind = "path_traversal"

    def __init__(self, relative_path: str):
        super().__init__(f"Path escapes storage root: {relative_path!r}", path=relative_path)


class NotFoundError(StorageError):
    kind = "not_found"

    def __init__(self, relative_path: str):
        super().__init__(f"Not found: {relative_path}", path=relative_path)


class PermissionDeniedError(StorageError):
    kind = "permission_denied"

    def __init__(self, relative_path: str, cause: Optional[BaseException] = None):
        super().__init__(f"Permission denied: {relative_path}", path=relative_path)
        self.cause = cause


class IoFailure(StorageError):
    kind = "io_failure"

    def __init__(self, relative_path: str, cause: BaseException):
        super().__init__(f"I/O failure on {relative_path}: {cause}", path=relative_path)
        self.cause = cause


# --- search ---


class SearchError(NullSpaceError):
    kind = "search"


class IndexCorruptError(SearchError):
    kind = "index_corrupt"


class QueryParseError(SearchError):
    kind = "query_parse_failed"

    def __init__(self, message: str, position: int, fragment: str):
        super().__init__(f"{message} at position {position}: {fragment!r}", position=position, fragment=fragment)
        self.position = position
        self.fragment = fragment


class WriterLockedError(SearchError):
    kind = "writer_locked"


# --- vault ---


class VaultError(NullSpaceError):
    kind = "vault"

    def __init__(self, message: str, stage: str = "unknown", **details: Any):
        super().__init__(message, stage=stage, **details)
        self.stage = stage


class ArchiveCorruptError(VaultError):
    kind = "archive_corrupt"


class MetadataMissingError(VaultError):
    kind = "metadata_missing"


class VaultDecryptionError(VaultError):
    kind = "decryption_failed"


class VaultIoError(VaultError):
    kind = "io_failure"
