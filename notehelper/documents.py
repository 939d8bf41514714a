"""Place synced items into SiYuan documents.

Two strategies, chosen per item by ``placement.decide``:

Standalone: one document per item. Before creating anything we look the
document up by its human-readable path (read from the file tree, so it is
correct even while the search index is still catching up after a restart)
and then by its ``custom-source-id`` attribute (catches documents whose path
template has since changed). Either hit means the item was already synced.

Merge bucket: items sharing a date are appended to one document. The
document's ``custom-merged-ids`` attribute is the ledger of items already
folded in; an item in the ledger is never appended again. Content is written
before the ledger, so a failed ledger write leaves the item unmarked and the
next run retries it.

No step here is transactional. Every write is preceded by a check that makes
re-running the same item safe.
"""

import json
import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from notehelper import assets, config, siyuan_client, templates
from notehelper.models import Article, MergeMode, ProcessResult
from notehelper.placement import Placement, decide, is_message_title, merge_date_for

log = logging.getLogger(__name__)

ATTR_SOURCE_ID = "custom-source-id"
ATTR_MERGE_DOC = "custom-merge-doc"
ATTR_MERGE_DATE = "custom-merge-date"
ATTR_MERGE_PATH = "custom-merge-path"
ATTR_MERGED_IDS = "custom-merged-ids"
ATTR_MERGE_COUNT = "custom-merge-count"
ATTR_LAST_MERGE_TIME = "custom-last-merge-time"
ATTR_CREATION_TIME = "custom-creation-time"
ATTR_NOTE_HELPER = "custom-note-helper"
ATTR_NOTE_HELPER_TYPE = "custom-note-helper-type"

MERGE_SEPARATOR = "\n\n---\n\n"

# A line holding only an IAL: block IALs, and the document IAL at the end
_IAL_LINE_RE = re.compile(r"^[ \t]*\{:[^}]*\}[ \t]*(?:\n|\Z)", re.MULTILINE)
_INLINE_IAL_RE = re.compile(r"\{:[^}]*\}")


def strip_ial(content: str) -> str:
    """Remove SiYuan inline attribute lists (``{: id="..." ...}``) from kramdown.

    Stored content carries document, block and inline IALs. Writing them back
    as markdown makes the kernel misread their values as block ids, so they are
    dropped before the content is reused.
    """
    cleaned = _IAL_LINE_RE.sub("", content)
    return _INLINE_IAL_RE.sub("", cleaned)


def siyuan_timestamp(now: Optional[datetime] = None) -> str:
    """Local time as YYYYMMDDHHMMSS, the format SiYuan uses in attributes."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def parse_ledger(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        ids = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Unreadable merged-ids ledger, treating as empty: %.100s", raw)
        return []
    if not isinstance(ids, list):
        log.warning("Merged-ids ledger is not a list: %.100s", raw)
        return []
    return [str(i) for i in ids]


class DocumentCache:
    """Path -> document id, valid for a single sync run only.

    The file tree can change between runs (manual edits, kernel restarts),
    so the cache is cleared at the start of every run and never persisted.
    """

    def __init__(self) -> None:
        self._ids: Dict[str, str] = {}

    @staticmethod
    def key(notebook: str, path: str) -> str:
        return f"{notebook}:{templates.normalize_path(path)}"

    def get(self, notebook: str, path: str) -> Optional[str]:
        return self._ids.get(self.key(notebook, path))

    def set(self, notebook: str, path: str, doc_id: str) -> None:
        self._ids[self.key(notebook, path)] = doc_id

    def clear(self) -> None:
        self._ids.clear()


class FileHandler:
    """Creates and appends SiYuan documents for synced items."""

    def __init__(self, client=siyuan_client, cache: Optional[DocumentCache] = None) -> None:
        self.client = client
        self.cache = cache if cache is not None else DocumentCache()

    def clear_cache(self) -> None:
        self.cache.clear()
        log.debug("Document cache cleared")

    def process_article(self, article: Article, notebook: str) -> ProcessResult:
        placement = decide(article, MergeMode.parse(config.MERGE_MODE))
        log.debug("Item %s (%r) -> %s", article.id, article.title, placement.value)
        if placement == Placement.MERGE:
            return self.merge_article_to_file(article, notebook)
        return self.create_separate_file(article, notebook)

    # -- Notebooks --

    def list_notebooks(self) -> List[Dict[str, str]]:
        """Open notebooks as [{id, name}]."""
        return [
            {"id": nb["id"], "name": nb.get("name", "")}
            for nb in self.client.ls_notebooks()
            if not nb.get("closed")
        ]

    def get_target_notebook(self) -> str:
        """Configured notebook, else the first open one."""
        if config.TARGET_NOTEBOOK:
            return config.TARGET_NOTEBOOK
        notebooks = self.client.ls_notebooks()
        for nb in notebooks:
            if not nb.get("closed"):
                return nb["id"]
        if notebooks:
            return notebooks[0]["id"]
        raise siyuan_client.SiyuanError("No notebook available in SiYuan")

    # -- Lookups --

    def find_by_hpath(self, notebook: str, hpath: str) -> Optional[str]:
        cached = self.cache.get(notebook, hpath)
        if cached:
            return cached
        ids = self.client.get_ids_by_hpath(notebook, hpath)
        if not ids:
            return None
        self.cache.set(notebook, hpath, ids[0])
        return ids[0]

    def find_by_source_id(self, source_id: str) -> Optional[str]:
        stmt = (
            f"SELECT block_id FROM attributes WHERE name='{ATTR_SOURCE_ID}' "
            f"AND value={siyuan_client.quote_sql(source_id)} LIMIT 1"
        )
        rows = self.client.sql(stmt)
        if not rows:
            return None
        doc_id = rows[0].get("block_id")
        if not doc_id or siyuan_client.looks_like_timestamp(doc_id):
            return None
        return doc_id

    def find_merge_bucket(self, notebook: str, hpath: str, merge_date: str, title: str) -> Optional[str]:
        """Find the bucket document for *merge_date*.

        First by attribute (falling back to an exact title match for buckets
        created without ``custom-merge-date``), then by path.
        """
        cached = self.cache.get(notebook, hpath)
        if cached:
            return cached

        q = siyuan_client.quote_sql
        stmt = (
            "SELECT DISTINCT b.id, b.content, b.hpath, a.value AS merge_date "
            "FROM blocks b "
            f"LEFT JOIN attributes a ON b.id = a.block_id AND a.name = '{ATTR_MERGE_DATE}' "
            f"WHERE b.type = 'd' AND b.box = {q(notebook)} "
            f"AND (a.value = {q(merge_date)} OR (a.value IS NULL AND b.content = {q(title)})) "
            f"ORDER BY CASE WHEN a.value = {q(merge_date)} THEN 0 ELSE 1 END, b.created DESC "
            "LIMIT 1"
        )
        rows = self.client.sql(stmt)
        doc_id = rows[0].get("id") if rows else None
        if doc_id and siyuan_client.looks_like_timestamp(doc_id):
            log.warning("Bucket query returned a timestamp instead of an id: %s", doc_id)
            doc_id = None

        if not doc_id:
            ids = self.client.get_ids_by_hpath(notebook, hpath)
            doc_id = ids[0] if ids else None

        if doc_id:
            self.cache.set(notebook, hpath, doc_id)
        return doc_id

    # -- Standalone documents --

    def create_separate_file(self, article: Article, notebook: str) -> ProcessResult:
        folder = templates.render_folder_path(article)
        filename = templates.render_filename(article)
        hpath = "/" + templates.join_path(folder, filename)

        existing = self.find_by_hpath(notebook, hpath)
        if existing:
            log.debug("Document already at %s, skipping %s", hpath, article.id)
            return ProcessResult(doc_id=existing, skipped=True)

        existing = self.find_by_source_id(article.id)
        if existing:
            log.debug("Document %s already holds %s, skipping", existing, article.id)
            return ProcessResult(doc_id=existing, skipped=True)

        if is_message_title(article.title):
            body = templates.render_message(article)
        else:
            body = templates.render_article_content(article)
        body = assets.localize_resources(body, client=self.client)
        content = templates.render_front_matter(article) + body

        doc_id = self.client.create_doc_with_md(notebook, hpath, content)
        self.cache.set(notebook, hpath, doc_id)

        # A missing source id degrades dedup to the path check, so it must land
        self.client.set_block_attrs(doc_id, {ATTR_SOURCE_ID: article.id})
        self._set_note_helper_attrs(doc_id, "link")

        log.info("Created %s", hpath)
        return ProcessResult(doc_id=doc_id, skipped=False)

    # -- Merge buckets --

    def merge_article_to_file(self, article: Article, notebook: str) -> ProcessResult:
        merge_date = merge_date_for(article)
        folder = templates.render_merge_folder_path(merge_date)
        filename = templates.render_single_filename(merge_date)
        hpath = "/" + templates.join_path(folder, filename)

        doc_id = self.find_merge_bucket(notebook, hpath, merge_date, filename)
        if doc_id:
            return self._append_to_bucket(doc_id, article, hpath, merge_date)
        return self._create_bucket(notebook, hpath, article, merge_date)

    def _render_block(self, article: Article) -> str:
        if is_message_title(article.title):
            block = templates.render_merge_block(article)
        else:
            block = templates.render_article_content(article)
        return assets.localize_resources(block, client=self.client)

    def _create_bucket(self, notebook: str, hpath: str, article: Article, merge_date: str) -> ProcessResult:
        # Bucket documents are append logs: no front matter
        block = self._render_block(article)
        doc_id = self.client.create_doc_with_md(notebook, hpath, block)
        self.cache.set(notebook, hpath, doc_id)

        now = siyuan_timestamp()
        self.client.set_block_attrs_with_retry(doc_id, {
            ATTR_MERGE_DOC: "true",
            ATTR_MERGE_DATE: merge_date,
            ATTR_MERGE_PATH: hpath,
            ATTR_CREATION_TIME: now,
            ATTR_MERGED_IDS: json.dumps([article.id]),
            ATTR_MERGE_COUNT: "1",
            ATTR_LAST_MERGE_TIME: now,
        })
        self._set_note_helper_attrs(doc_id, "message")

        log.info("Created merge document %s with %s", hpath, article.id)
        return ProcessResult(doc_id=doc_id, skipped=False)

    def _append_to_bucket(self, doc_id: str, article: Article, hpath: str, merge_date: str) -> ProcessResult:
        attrs = self.client.get_block_attrs(doc_id)
        merged_ids = parse_ledger(attrs.get(ATTR_MERGED_IDS))
        if article.id in merged_ids:
            log.debug("%s already merged into %s, skipping", article.id, hpath)
            return ProcessResult(doc_id=doc_id, skipped=True)

        existing = strip_ial(self.client.get_block_kramdown(doc_id)).rstrip()
        block = self._render_block(article)
        separator = MERGE_SEPARATOR if existing else ""
        self.client.update_block(doc_id, f"{existing}{separator}{block}")

        merged_ids.append(article.id)
        ledger = {
            ATTR_MERGED_IDS: json.dumps(merged_ids),
            ATTR_MERGE_COUNT: str(len(merged_ids)),
            ATTR_LAST_MERGE_TIME: siyuan_timestamp(),
        }
        if not attrs.get(ATTR_MERGE_DATE):
            # Bucket predates the attributes (e.g. created by hand)
            ledger.update({
                ATTR_MERGE_DOC: "true",
                ATTR_MERGE_DATE: merge_date,
                ATTR_MERGE_PATH: hpath,
            })
        self.client.set_block_attrs_with_retry(doc_id, ledger)

        log.info("Merged %s into %s (%d items)", article.id, hpath, len(merged_ids))
        return ProcessResult(doc_id=doc_id, skipped=False)

    def _set_note_helper_attrs(self, doc_id: str, kind: str) -> None:
        try:
            self.client.set_block_attrs(doc_id, {
                ATTR_NOTE_HELPER: "NoteHelper",
                ATTR_NOTE_HELPER_TYPE: kind,
            })
        except Exception:
            log.warning("Could not set note-helper attributes on %s", doc_id, exc_info=True)
