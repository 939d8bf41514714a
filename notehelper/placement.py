"""Decide where an item lands: its own document or a dated merge bucket."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from notehelper.models import Article, MergeMode

_MESSAGE_TITLE_RE = re.compile(r"^同步助手_\d{8}")
_TITLE_DATE_RE = re.compile(r"同步助手_(\d{4})(\d{2})(\d{2})")


class Placement(str, Enum):
    STANDALONE = "standalone"
    MERGE = "merge"


def is_message_title(title: str) -> bool:
    """Clipped messages are titled ``同步助手_YYYYMMDD...``."""
    return bool(_MESSAGE_TITLE_RE.match(title or ""))


def extract_date_from_title(title: str) -> Optional[str]:
    """Return the title's embedded date as YYYY-MM-DD, or None."""
    m = _TITLE_DATE_RE.search(title or "")
    if not m:
        return None
    return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"


def decide(article: Article, merge_mode: MergeMode) -> Placement:
    if merge_mode == MergeMode.ALL:
        return Placement.MERGE
    if merge_mode == MergeMode.MESSAGES and is_message_title(article.title):
        return Placement.MERGE
    return Placement.STANDALONE


def merge_date_for(article: Article) -> str:
    """Bucket key: the title's date token if any, else the saved date."""
    saved = article.saved_at.split("T")[0] or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return extract_date_from_title(article.title) or saved
