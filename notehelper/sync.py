"""Sync orchestration: pull items from NoteHelper and place them in SiYuan.

One run at a time per process. A run pages through the source, processes
items strictly in order, and stamps the cursor when it finishes. Per-item
failures are recorded and do not stop the run; a failure while fetching
aborts it without moving the cursor.
"""

import logging
import threading
from datetime import timedelta
from typing import List, Optional

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notehelper import config, siyuan_client, source_client, templates
from notehelper.documents import FileHandler
from notehelper.models import Article, SyncResult
from notehelper.state import State, parse_iso, utc_now_iso

log = logging.getLogger(__name__)

ALREADY_RUNNING = "Sync already in progress"

# Stop paging past this offset even if the source keeps reporting more pages
_MAX_OFFSET = 1000

_JOB_ID = "notehelper-sync"


class SyncManager:
    """Owns the single-flight guard, the cursor and the scheduled-sync handle."""

    def __init__(self, file_handler: Optional[FileHandler] = None, source=source_client,
                 page_size: Optional[int] = None) -> None:
        self.file_handler = file_handler or FileHandler()
        self.source = source
        self.page_size = page_size or config.PAGE_SIZE
        self.syncing = False
        self._lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    # -- Cursor --

    def filter_timestamp(self, state: State) -> Optional[str]:
        """The modified-since filter: last sync minus the lookback window."""
        cursor = parse_iso(state.sync_at)
        if cursor is None:
            return None
        since = cursor - timedelta(hours=config.SYNC_LOOKBACK_HOURS)
        return since.strftime("%Y-%m-%dT%H:%M:%SZ")

    def reset_sync_time(self) -> None:
        state = State()
        state.reset_sync_at()
        state.save()
        log.info("Sync cursor reset; next sync fetches everything")

    def set_sync_time(self, timestamp: str) -> None:
        state = State()
        state.set_sync_at(timestamp)
        state.save()
        log.info("Sync cursor set to %s", timestamp)

    # -- Running --

    def sync(self) -> SyncResult:
        if not config.NOTEHELPER_ENDPOINT or not config.NOTEHELPER_API_KEY:
            msg = "NOTEHELPER_ENDPOINT and NOTEHELPER_API_KEY must be configured"
            log.error(msg)
            return SyncResult(success=False, errors=[msg])

        if not self._lock.acquire(blocking=False):
            log.info(ALREADY_RUNNING)
            return SyncResult(success=False, errors=[ALREADY_RUNNING])
        try:
            self.syncing = True
            return self._run()
        finally:
            self.syncing = False
            self._lock.release()

    def _run(self) -> SyncResult:
        handler = self.file_handler
        handler.clear_cache()
        state = State()

        try:
            notebook = handler.get_target_notebook()
            articles = self.fetch_all(self.filter_timestamp(state))
        except (requests.exceptions.RequestException,
                source_client.SourceError, siyuan_client.SiyuanError) as e:
            log.error("Sync aborted: %s", e)
            state.record_run(success=False, count=0, skipped=0, errors=1)
            state.save()
            return SyncResult(success=False, errors=[str(e)])

        log.info("Processing %d item(s) into notebook %s", len(articles), notebook)
        result = SyncResult(success=True)
        for article in articles:
            try:
                outcome = handler.process_article(article, notebook)
            except Exception as e:
                log.exception("Failed to sync %s (%s)", article.id, article.title)
                result.errors.append(f"{article.title or article.id}: {e}")
                continue
            if outcome.skipped:
                result.skipped_count += 1
            else:
                result.created_count += 1

        result.success = not result.errors
        state.advance_sync_at(utc_now_iso())
        state.record_run(
            success=result.success,
            count=result.created_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        state.save()
        log.info("Sync finished: %s", result.summary())
        return result

    def fetch_all(self, updated_at: Optional[str]) -> List[Article]:
        """Page through the source from offset 0 until it reports no more pages."""
        include_content = templates.template_needs_content(
            config.ARTICLE_TEMPLATE,
            config.MESSAGE_TEMPLATE,
            config.MERGE_MESSAGE_TEMPLATE,
            config.FRONT_MATTER_TEMPLATE,
        )
        articles: List[Article] = []
        offset = 0
        while True:
            page, has_next = self.source.get_items(
                after=offset,
                first=self.page_size,
                updated_at=updated_at,
                query=config.NOTEHELPER_CUSTOM_QUERY,
                include_content=include_content,
            )
            articles.extend(page)
            if not has_next or not page:
                break
            offset += self.page_size
            if offset > _MAX_OFFSET:
                log.warning("Stopped paging at offset %d; source still reports more", offset)
                break
        log.debug("Fetched %d item(s) (since %s)", len(articles), updated_at or "the beginning")
        return articles

    # -- Scheduling --

    def start_scheduled_sync(self, minutes: Optional[int] = None) -> bool:
        """Run sync every *minutes* in a background thread. Returns False if disabled.

        Any previously scheduled job is stopped first.
        """
        self.stop_scheduled_sync()
        minutes = config.SYNC_FREQUENCY if minutes is None else minutes
        if minutes <= 0:
            return False
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=minutes),
            id=_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        log.info("Scheduled sync every %d minute(s)", minutes)
        return True

    def stop_scheduled_sync(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.debug("Scheduled sync stopped")

    @property
    def scheduled(self) -> bool:
        return self._scheduler is not None

    def _scheduled_run(self) -> None:
        result = self.sync()
        if result.errors == [ALREADY_RUNNING]:
            return
        if result.errors:
            log.warning("Scheduled sync: %s", result.summary())
        else:
            log.info("Scheduled sync: %s", result.summary())
