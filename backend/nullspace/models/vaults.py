from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nullspace.models.notes import as_utc, utc_now

ARCHIVE_FORMAT_VERSION = "1.0"


class Vault(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, frozen=True)
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now, frozen=True)
    updated_at: datetime = Field(default_factory=utc_now)
    # bound to the derived key; changing it would orphan every encrypted note
    salt: str = Field(min_length=1, frozen=True)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def new(cls, name: str, description: str, salt: str) -> Vault:
        now = utc_now()
        return cls(name=name, description=description, salt=salt, created_at=now, updated_at=now)

    def update(self, name: Optional[str] = None, description: Optional[str] = None) -> None:
        if name is not None:
            self.name = name
        if description is not None:
            self.description = description
        self.updated_at = max(utc_now(), self.updated_at)


class VaultMetadata(BaseModel):
    vault: Vault
    note_count: int = Field(ge=0)
    export_date: datetime = Field(default_factory=utc_now)
    version: str = ARCHIVE_FORMAT_VERSION


class ConflictResolution(str, Enum):
    OVERWRITE = "overwrite"
    KEEP_BOTH = "keep_both"
    SKIP = "skip"
