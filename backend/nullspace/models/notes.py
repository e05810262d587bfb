from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TAG_SEPARATOR = "/"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive timestamps are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_tag_path(path: str) -> str:
    if not isinstance(path, str) or not path:
        raise ValueError("Tag path must be a non-empty string")
    if path.startswith(TAG_SEPARATOR) or path.endswith(TAG_SEPARATOR):
        raise ValueError(f"Tag path has a leading or trailing separator: {path!r}")
    if any(segment == "" for segment in path.split(TAG_SEPARATOR)):
        raise ValueError(f"Tag path has an empty segment: {path!r}")
    return path


@dataclass(frozen=True)
class Tag:
    """View over a hierarchical tag path such as ``work/project/urgent``."""

    path: str
    name: str
    parent: Optional[str] = None

    @classmethod
    def from_path(cls, path: str) -> Tag:
        validate_tag_path(path)
        parent, sep, name = path.rpartition(TAG_SEPARATOR)
        return cls(path=path, name=name, parent=parent if sep else None)

    def ancestors(self) -> list[str]:
        parts = self.path.split(TAG_SEPARATOR)
        return [TAG_SEPARATOR.join(parts[:i]) for i in range(1, len(parts))]


class Note(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, frozen=True)
    title: str
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now, frozen=True)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=1, ge=1)

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, tags: list[str]) -> list[str]:
        seen = set()
        for tag in tags:
            validate_tag_path(tag)
            if tag in seen:
                raise ValueError(f"Duplicate tag: {tag!r}")
            seen.add(tag)
        return tags

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def new(cls, title: str, content: str, tags: list[str] | None = None) -> Note:
        now = utc_now()
        return cls(title=title, content=content, tags=list(tags or []), created_at=now, updated_at=now)

    def update(self, title: str, content: str, tags: list[str]) -> None:
        # validate everything before touching any field
        checked = Note(title=title, content=content, tags=list(tags))
        self.title = checked.title
        self.content = checked.content
        self.tags = checked.tags
        self.updated_at = max(utc_now(), self.updated_at)
        self.version += 1

    def tag_views(self) -> list[Tag]:
        return [Tag.from_path(t) for t in self.tags]

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_json_bytes(cls, raw: bytes) -> Note:
        return cls.model_validate_json(raw)
