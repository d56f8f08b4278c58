"""Shared data types: credentials and listing pages."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel


@dataclass(frozen=True)
class Credentials:
    """An S3 access key pair. The secret never appears in repr()."""

    access_key_id: str
    secret_access_key: str = field(repr=False)

    @property
    def scope(self) -> str:
        """Stable, non-reversible identifier shared by every session using this key."""
        return credential_scope(self.access_key_id)


def credential_scope(access_key_id: str) -> str:
    return hashlib.sha256(access_key_id.encode("utf-8")).hexdigest()[:16]


class FolderEntry(BaseModel):
    type: Literal["folder"] = "folder"
    key: str
    name: str


class FileEntry(BaseModel):
    type: Literal["file"] = "file"
    key: str
    name: str
    size: int
    last_modified: str | None = None
    content_type: str | None = None


class ListObjectsResponse(BaseModel):
    """One page of a delimited listing, as served to the browser."""

    bucket: str
    prefix: str
    continuation_token: str | None = None
    next_continuation_token: str | None = None
    is_truncated: bool = False
    folders: list[FolderEntry] = []
    files: list[FileEntry] = []


class ObjectMetadata(BaseModel):
    bucket: str
    key: str
    size: int | None = None
    last_modified: str | None = None
    content_type: str | None = None
