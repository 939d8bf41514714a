"""NoteHelper entry point.

One-shot by default: syncs new items into SiYuan, then exits. Run it from
cron, or use --watch to keep it running on the configured interval.
"""

import logging
import sys
import time

import requests

from notehelper import __version__

log = logging.getLogger("notehelper")


def _status() -> None:
    """Print cursor and last run to the terminal."""
    from notehelper import config
    from notehelper.state import State

    state = State()

    print()
    print("  NoteHelper -> SiYuan")
    print("  " + "─" * 40)
    print(f"  Cursor:    {state.sync_at or 'not set (next sync fetches everything)'}")
    print(f"  Lookback:  {config.SYNC_LOOKBACK_HOURS}h")
    print(f"  Merge:     {config.MERGE_MODE}")
    print(f"  Notebook:  {config.TARGET_NOTEBOOK or 'first open notebook'}")

    run = state.last_run
    if run:
        outcome = "ok" if run["success"] else "with errors"
        print(
            f"  Last run:  {run['finished_at']} ({outcome}): "
            f"{run['count']} created, {run['skipped']} skipped, {run['errors']} error(s)"
        )
    else:
        print("  Last run:  never")

    if config.SYNC_FREQUENCY > 0:
        print(f"  Schedule:  every {config.SYNC_FREQUENCY} min (with --watch)")
    print()


def _reset() -> None:
    from notehelper.sync import SyncManager

    SyncManager().reset_sync_time()
    print("Sync cursor reset. The next sync fetches all items.")


def _set_cursor(args: list[str]) -> None:
    from notehelper.sync import SyncManager

    if not args or args[0].startswith("-"):
        print("Usage: notehelper --set-cursor 2024-05-01T00:00:00Z")
        sys.exit(1)
    try:
        SyncManager().set_sync_time(args[0])
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Sync cursor set to {args[0]}")


def _count() -> None:
    from notehelper import source_client

    print(f"{source_client.get_article_count()} item(s) on the server")


def _check() -> None:
    from notehelper import config, siyuan_client, source_client
    from notehelper.documents import FileHandler

    key = source_client.mask_api_key(config.NOTEHELPER_API_KEY)
    if source_client.test_connection():
        print(f"  NoteHelper: ok (key {key})")
    else:
        print(f"  NoteHelper: FAILED (key {key})")

    try:
        notebooks = FileHandler().list_notebooks()
    except (requests.exceptions.RequestException, siyuan_client.SiyuanError) as e:
        print(f"  SiYuan:     FAILED ({e})")
        return
    print(f"  SiYuan:     ok, {len(notebooks)} open notebook(s)")
    for nb in notebooks:
        print(f"    {nb['id']}  {nb['name']}")


def _print_result(result) -> None:
    print(f"\n  Sync {'complete' if result.success else 'finished with errors'}: {result.summary()}")
    for error in result.errors:
        print(f"    - {error}")
    print()


def _watch(manager) -> None:
    from notehelper import config

    if config.SYNC_ON_START:
        _print_result(manager.sync())
    if not manager.start_scheduled_sync():
        print("SYNC_FREQUENCY is 0; set it to a number of minutes to use --watch.")
        return
    print(f"Syncing every {config.SYNC_FREQUENCY} min. Press Ctrl-C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop_scheduled_sync()


_HELP = """\
Usage: notehelper <command>

  notehelper --sync              Sync new items into SiYuan (default)
  notehelper --watch             Sync on a schedule (SYNC_FREQUENCY minutes)
  notehelper --status            Show sync cursor and last run
  notehelper --reset             Reset the sync cursor (next sync fetches everything)
  notehelper --set-cursor TS     Set the sync cursor to an ISO timestamp
  notehelper --count             Show how many items the server holds
  notehelper --check             Test the NoteHelper and SiYuan connections

Options:
  -h, --help                     Show this help
  -V, --version                  Show version
"""


def main():
    if "--help" in sys.argv or "-h" in sys.argv:
        print(_HELP)
        return

    if "--version" in sys.argv or "-V" in sys.argv:
        print(f"notehelper {__version__}")
        return

    from notehelper import config

    config.setup_logging()

    if "--status" in sys.argv:
        _status()
        return

    from notehelper.state import acquire_lock, release_lock

    # Cursor edits and syncs must not overlap
    if not acquire_lock():
        log.warning("Another instance is running (lock held), exiting")
        return

    try:
        if "--reset" in sys.argv:
            _reset()
            return

        if "--set-cursor" in sys.argv:
            idx = sys.argv.index("--set-cursor")
            _set_cursor(sys.argv[idx + 1:])
            return

        config.ensure_loaded()

        if "--count" in sys.argv:
            _count()
            return

        if "--check" in sys.argv:
            _check()
            return

        from notehelper.sync import SyncManager

        manager = SyncManager()
        if "--watch" in sys.argv:
            _watch(manager)
            return

        _print_result(manager.sync())

    except requests.exceptions.ConnectionError:
        print(
            "\n  Could not connect."
            "\n  Check NOTEHELPER_ENDPOINT, SIYUAN_API_URL and your network.\n"
        )
        return
    except requests.exceptions.HTTPError as e:
        resp = e.response
        if resp is not None and resp.status_code in (401, 403):
            print(
                f"\n  Server returned {resp.status_code}."
                "\n  Your API key or token may be invalid."
                "\n  Check NOTEHELPER_API_KEY and SIYUAN_API_TOKEN in your config.\n"
            )
            return
        log.exception("HTTP error")
        raise
    except Exception:
        log.exception("Unexpected error")
        raise
    finally:
        release_lock()


if __name__ == "__main__":
    main()
