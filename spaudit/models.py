"""Data model for SharePoint drive items and report rows."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024


@dataclass(frozen=True)
class TreeEntry:
    """
    One driveItem as returned by a children listing.

    Folder entries carry size 0: Graph reports a rolled-up size for folders
    that must never be added to a total.
    """

    id: str
    name: str
    is_folder: bool
    size: int = 0
    parent_id: Optional[str] = None
    web_url: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "TreeEntry":
        is_folder = "folder" in item
        parent_ref = item.get("parentReference") or {}
        return cls(
            id=item["id"],
            name=item.get("name", ""),
            is_folder=is_folder,
            size=0 if is_folder else int(item.get("size") or 0),
            parent_id=parent_ref.get("id"),
            web_url=item.get("webUrl"),
        )


@dataclass
class FolderAggregate:
    """Totals for one top-level folder's subtree."""

    name: str
    path: str
    file_count: int = 0
    subfolder_count: int = 0
    size_bytes: int = 0

    @classmethod
    def empty(cls, name: str) -> "FolderAggregate":
        return cls(name=name, path=name)

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / BYTES_PER_MB, 2)

    @property
    def size_gb(self) -> float:
        return round(self.size_bytes / BYTES_PER_GB, 4)

    def as_row(self) -> List[str]:
        return [
            self.name,
            self.path,
            str(self.file_count),
            str(self.subfolder_count),
            str(self.size_bytes),
            f"{self.size_mb:.2f}",
            f"{self.size_gb:.4f}",
        ]


@dataclass(frozen=True)
class FolderFailure:
    """A top-level folder (or library, for permission scans) whose task did not complete."""

    name: str
    error: BaseException


@dataclass(frozen=True)
class Site:
    id: str
    name: str
    web_url: str


@dataclass(frozen=True)
class Library:
    """A document library (Graph drive)."""

    id: str
    name: str
    web_url: str = ""


@dataclass(frozen=True)
class PermissionGrant:
    """One permission assignment held by the audited user."""

    site_url: str
    library: str
    item_type: str  # 'Library', 'Folder' or 'File'
    item_path: str
    item_url: str
    user: str
    roles: List[str] = field(default_factory=list)
    granted_via: str = "Direct"
    inherited: bool = False

    def as_row(self) -> List[str]:
        return [
            self.site_url,
            self.library,
            self.item_type,
            self.item_path,
            self.item_url,
            self.user,
            ", ".join(self.roles),
            self.granted_via,
            "Yes" if self.inherited else "No",
        ]
