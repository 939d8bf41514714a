"""Plain data types shared by the sync engine.

Items arrive from the source as camelCase JSON; ``Article.from_dict`` maps them
onto snake_case dataclasses once, at the client boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MergeMode(str, Enum):
    NONE = "none"
    MESSAGES = "messages"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "MergeMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.MESSAGES


class ImageMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def parse(cls, value: str) -> "ImageMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.LOCAL


@dataclass
class Highlight:
    id: str = ""
    quote: str = ""
    annotation: str = ""
    color: str = ""
    highlighted_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Highlight":
        return cls(
            id=str(data.get("id") or ""),
            quote=data.get("quote") or "",
            annotation=data.get("annotation") or "",
            color=data.get("color") or "",
            highlighted_at=data.get("highlightedAt") or "",
            updated_at=data.get("updatedAt") or "",
        )


@dataclass
class Label:
    name: str
    color: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Label":
        return cls(
            name=data.get("name") or "",
            color=data.get("color") or "",
            description=data.get("description") or "",
        )


@dataclass
class Article:
    """One reading item from the source. ``id`` is the dedup key."""

    id: str
    title: str = ""
    author: str = ""
    content: str = ""
    url: str = ""
    saved_at: str = ""
    published_at: str = ""
    archived_at: str = ""
    site_name: str = ""
    description: str = ""
    note: str = ""
    image: str = ""
    words_count: int = 0
    read_length: int = 0
    state: str = ""
    type: str = ""
    highlights: List[Highlight] = field(default_factory=list)
    labels: List[Label] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Article":
        if not data.get("id"):
            raise ValueError("Item has no id")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            author=data.get("author") or "",
            content=data.get("content") or "",
            url=data.get("url") or "",
            saved_at=data.get("savedAt") or "",
            published_at=data.get("publishedAt") or "",
            archived_at=data.get("archivedAt") or "",
            site_name=data.get("siteName") or "",
            description=data.get("description") or "",
            note=data.get("note") or "",
            image=data.get("image") or "",
            words_count=int(data.get("wordsCount") or 0),
            read_length=int(data.get("readLength") or 0),
            state=data.get("state") or "",
            type=data.get("type") or "",
            highlights=[Highlight.from_dict(h) for h in data.get("highlights") or [] if h],
            labels=[Label.from_dict(lb) for lb in data.get("labels") or [] if lb],
        )


@dataclass
class ProcessResult:
    doc_id: str
    skipped: bool = False


@dataclass
class UploadResult:
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyncResult:
    success: bool
    created_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        text = f"{self.created_count} created, {self.skipped_count} skipped"
        if self.errors:
            text += f", {len(self.errors)} error(s)"
        return text
