"""Markdown rendering for synced items.

Uses Jinja2 with string templates taken from config. Every renderer falls back
to a plain rendering if the user's template is broken, so a bad template never
blocks a sync.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from jinja2 import BaseLoader, Environment, TemplateError, meta

from notehelper import config
from notehelper.models import Article
from notehelper.state import parse_iso

log = logging.getLogger(__name__)

_CONTENT_VARIABLES = {"content", "highlights"}
_WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

_env: Optional[Environment] = None


def _get_env() -> Environment:
    """Shared Jinja2 environment. Markdown output, so no autoescaping."""
    global _env
    if _env is None:
        _env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            keep_trailing_newline=True,
        )
    return _env


def _render(template: str, view: Dict[str, Any]) -> str:
    return _get_env().from_string(template).render(**view)


# -- Dates and paths --


def format_date(value: str, fmt: str) -> str:
    """Format an ISO timestamp with a strftime pattern. Empty string if unparseable."""
    dt = parse_iso(value)
    if dt is None:
        return ""
    return dt.strftime(fmt)


def sanitize_file_name(name: str) -> str:
    """Replace characters that are illegal in file names and collapse whitespace."""
    name = re.sub(r'[<>:"/\\|?*]', "-", name)
    return " ".join(name.split())


def normalize_path(path: str) -> str:
    """Forward slashes, no duplicate, leading or trailing slashes."""
    if not path:
        return ""
    return re.sub(r"/+", "/", path.replace("\\", "/")).strip("/")


def join_path(*parts: str) -> str:
    return normalize_path("/".join(p for p in parts if p))


# -- Views --


def article_to_view(article: Article) -> Dict[str, Any]:
    """Flatten an Article into the variables available to templates."""
    return {
        "id": article.id,
        "title": article.title or "Untitled",
        "author": article.author,
        "content": article.content,
        "original_url": article.url,
        "site_name": article.site_name,
        "description": article.description,
        "note": article.note,
        "date_saved": format_date(article.saved_at, config.DATE_SAVED_FORMAT),
        "date_published": format_date(article.published_at, config.DATE_SAVED_FORMAT),
        "date_archived": format_date(article.archived_at, config.DATE_SAVED_FORMAT),
        "words_count": article.words_count,
        "read_length": article.read_length,
        "state": article.state,
        "type": article.type,
        "image": article.image,
        "labels": [label.name for label in article.labels],
        "highlights": [
            {
                "text": h.quote,
                "note": h.annotation,
                "color": h.color or "yellow",
                "date_highlighted": format_date(h.highlighted_at, config.DATE_HIGHLIGHTED_FORMAT),
            }
            for h in article.highlights
        ],
    }


def template_needs_content(*templates: str) -> bool:
    """True if any template references the item body or its highlights."""
    env = _get_env()
    for template in templates:
        if not template:
            continue
        try:
            names = meta.find_undeclared_variables(env.parse(template))
        except TemplateError:
            # Can't tell; fetch content to be safe
            return True
        if names & _CONTENT_VARIABLES:
            return True
    return False


# -- Content --


def render_article_content(article: Article) -> str:
    try:
        return _render(config.ARTICLE_TEMPLATE, article_to_view(article))
    except TemplateError as e:
        log.error("Article template failed for %s: %s", article.id, e)
        return f"# {article.title}\n\n{article.content}"


def render_message(article: Article) -> str:
    """Standalone document for a clipped message."""
    try:
        return _render(config.MESSAGE_TEMPLATE, article_to_view(article))
    except TemplateError as e:
        log.error("Message template failed for %s: %s", article.id, e)
        return render_article_content(article)


def render_merge_block(article: Article) -> str:
    """The block appended to a merge bucket document for one item."""
    try:
        return _render(config.MERGE_MESSAGE_TEMPLATE, article_to_view(article))
    except TemplateError as e:
        log.error("Merge message template failed for %s: %s", article.id, e)
        return f"## {article.title}\n{article.content}"


def render_front_matter(article: Article) -> str:
    """YAML front matter from the front matter template or the variable list.

    Returns an empty string when neither is configured.
    """
    if not config.FRONT_MATTER_TEMPLATE and not config.FRONT_MATTER_VARIABLES:
        return ""

    view = article_to_view(article)
    if config.FRONT_MATTER_TEMPLATE:
        try:
            return _render(config.FRONT_MATTER_TEMPLATE, view)
        except TemplateError as e:
            log.error("Front matter template failed for %s: %s", article.id, e)
            return ""

    lines = []
    for name in config.FRONT_MATTER_VARIABLES:
        if name not in view:
            log.debug("Unknown front matter variable: %s", name)
            continue
        lines.append(_yaml_line(name, view[name]))
    if not lines:
        return ""
    return "---\n" + "\n".join(lines) + "\n---\n\n"


def _yaml_line(key: str, value: Any) -> str:
    if isinstance(value, list):
        items = [
            f'"{_escape_yaml(str(v))}"' for v in value if not isinstance(v, dict)
        ]
        return f"{key}: [{', '.join(items)}]"
    if isinstance(value, int):
        return f"{key}: {value}"
    text = str(value)
    if "\n" in text:
        return f"{key}: |\n  " + text.replace("\n", "\n  ")
    return f'{key}: "{_escape_yaml(text)}"'


def _escape_yaml(s: str) -> str:
    """Escape a string for use in YAML double-quoted context."""
    return s.replace("\\", "\\\\").replace('"', '\\"')


# -- Locations --


def render_filename(article: Article) -> str:
    try:
        filename = _render(config.FILENAME_TEMPLATE, article_to_view(article))
    except TemplateError as e:
        log.error("Filename template failed for %s: %s", article.id, e)
        return f"article-{article.id}"
    filename = sanitize_file_name(filename)
    return filename or f"untitled-{article.id}"


def render_folder_path(article: Article) -> str:
    view = article_to_view(article)
    view["date"] = format_date(article.saved_at, config.FOLDER_DATE_FORMAT)
    try:
        return normalize_path(_render(config.FOLDER_TEMPLATE, view))
    except TemplateError as e:
        log.error("Folder template failed: %s", e)
        return "NoteHelper"


def render_merge_folder_path(merge_date: str) -> str:
    """Folder for a merge bucket; *merge_date* is the YYYY-MM-DD bucket key."""
    view = {"date": format_date(merge_date, config.MERGE_FOLDER_DATE_FORMAT) or merge_date}
    try:
        return normalize_path(_render(config.MERGE_FOLDER_TEMPLATE, view))
    except TemplateError as e:
        log.error("Merge folder template failed: %s", e)
        return "NoteHelper/Messages"


def render_single_filename(merge_date: str) -> str:
    """Document title for a merge bucket; *merge_date* is the YYYY-MM-DD bucket key."""
    view = {"date": format_date(merge_date, config.SINGLE_FILE_DATE_FORMAT) or merge_date}
    try:
        return sanitize_file_name(_render(config.SINGLE_FILE_TEMPLATE, view)) or merge_date
    except TemplateError as e:
        log.error("Single file template failed: %s", e)
        return f"NoteHelper_{merge_date}"


def time_variables(now: Optional[datetime] = None) -> Dict[str, str]:
    now = now or datetime.now()
    return {
        "date": now.strftime(config.FOLDER_DATE_FORMAT),
        "year": now.strftime("%Y"),
        "month": now.strftime("%m"),
        "day": now.strftime("%d"),
        "hour": now.strftime("%H"),
        "minute": now.strftime("%M"),
        "weekday": _WEEKDAYS[now.weekday()],
        "quarter": f"Q{(now.month - 1) // 3 + 1}",
    }


def render_asset_folder(template: str, default: str, now: Optional[datetime] = None) -> str:
    """Render an asset folder template. Anything outside ``assets/`` falls back to *default*."""
    variables = time_variables(now)
    try:
        folder = normalize_path(_render(template, variables))
    except TemplateError as e:
        log.error("Asset folder template failed: %s", e)
        folder = ""
    if not folder.startswith("assets/"):
        fallback = normalize_path(_render(default, variables))
        log.warning("Asset folder %r is not under assets/, using %s", folder, fallback)
        folder = fallback
    return folder
