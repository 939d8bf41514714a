"""Shared fixtures: isolated state, predictable config, and an in-memory SiYuan."""

import itertools
import json
import re

import pytest


@pytest.fixture(autouse=True)
def isolate_state(tmp_path, monkeypatch):
    """Point state module at a temp directory so tests don't touch real state."""
    import notehelper.state as state_mod

    monkeypatch.setattr(state_mod, "STATE_PATH", tmp_path / "state.json")
    monkeypatch.setattr(state_mod, "LOCK_PATH", tmp_path / "state.lock")
    yield tmp_path


@pytest.fixture(autouse=True)
def base_config(monkeypatch):
    """Known settings regardless of the developer's own .env."""
    from notehelper import config

    values = {
        "NOTEHELPER_ENDPOINT": "https://notes.example.com/api/graphql",
        "NOTEHELPER_API_KEY": "nh_test_key_123456",
        "NOTEHELPER_CUSTOM_QUERY": "",
        "SIYUAN_API_URL": "http://127.0.0.1:6806",
        "SIYUAN_API_TOKEN": "tok",
        "SIYUAN_WORKSPACE_DIR": "/ws",
        "TARGET_NOTEBOOK": "",
        "MERGE_MODE": "messages",
        "PAGE_SIZE": 15,
        "SYNC_LOOKBACK_HOURS": 12,
        "SYNC_FREQUENCY": 0,
        "FOLDER_TEMPLATE": "NoteHelper/{{ date }}",
        "FOLDER_DATE_FORMAT": "%Y-%m-%d",
        "FILENAME_TEMPLATE": "{{ title }}",
        "MERGE_FOLDER_TEMPLATE": "NoteHelper/Messages/{{ date }}",
        "MERGE_FOLDER_DATE_FORMAT": "%Y-%m",
        "SINGLE_FILE_TEMPLATE": "同步助手_{{ date }}",
        "SINGLE_FILE_DATE_FORMAT": "%Y-%m-%d",
        "ARTICLE_TEMPLATE": config.DEFAULT_ARTICLE_TEMPLATE,
        "MESSAGE_TEMPLATE": config.DEFAULT_MESSAGE_TEMPLATE,
        "MERGE_MESSAGE_TEMPLATE": config.DEFAULT_MERGE_MESSAGE_TEMPLATE,
        "FRONT_MATTER_TEMPLATE": "",
        "FRONT_MATTER_VARIABLES": [],
        "DATE_SAVED_FORMAT": "%Y-%m-%d %H:%M:%S",
        "DATE_HIGHLIGHTED_FORMAT": "%Y-%m-%d %H:%M:%S",
        "IMAGE_MODE": "remote",
        "IMAGE_FOLDER_TEMPLATE": "assets/NoteHelper/images/{{ date }}",
        "ATTACHMENT_FOLDER": "assets/NoteHelper/attachments",
        "ASSET_TEMP_DIR": "/temp/notehelper",
        "HTTP_TIMEOUT": 5,
    }
    for key, value in values.items():
        monkeypatch.setattr(config, key, value)
    yield config


class FakeSiyuan:
    """In-memory stand-in for ``notehelper.siyuan_client``.

    Documents live in ``self.docs``; every call is appended to ``self.calls``.
    Set ``index_lag`` to make SQL queries return nothing, as the kernel does
    right after a restart.
    """

    def __init__(self):
        from notehelper import siyuan_client

        self.SiyuanError = siyuan_client.SiyuanError
        self.docs = {}
        self.calls = []
        self.notebooks = [{"id": "nb1", "name": "Inbox", "closed": False}]
        self.index_lag = False
        self.fail_next = {}
        self._ids = itertools.count(1)

    def _record(self, name):
        self.calls.append(name)
        if self.fail_next.get(name):
            self.fail_next[name] -= 1
            raise self.SiyuanError(f"{name}: injected failure")

    def count(self, name):
        return self.calls.count(name)

    @staticmethod
    def _norm(hpath):
        from notehelper.siyuan_client import normalize_hpath

        return normalize_hpath(hpath)

    # -- documents --

    def create_doc_with_md(self, notebook, path, markdown):
        self._record("create_doc_with_md")
        doc_id = f"20250101120000-doc{next(self._ids):04d}"
        self.docs[doc_id] = {
            "notebook": notebook,
            "hpath": self._norm(path),
            "content": markdown,
            "attrs": {},
        }
        return doc_id

    def update_block(self, block_id, markdown):
        self._record("update_block")
        self.docs[block_id]["content"] = markdown

    def get_block_kramdown(self, block_id):
        self._record("get_block_kramdown")
        return self.docs[block_id]["content"] + f'\n{{: id="{block_id}" updated="20250101120000"}}'

    def get_ids_by_hpath(self, notebook, hpath):
        self._record("get_ids_by_hpath")
        path = self._norm(hpath)
        return [
            doc_id for doc_id, doc in self.docs.items()
            if doc["notebook"] == notebook and doc["hpath"] == path
        ]

    # -- attributes --

    def get_block_attrs(self, block_id):
        self._record("get_block_attrs")
        return dict(self.docs[block_id]["attrs"])

    def set_block_attrs(self, block_id, attrs):
        self._record("set_block_attrs")
        self.docs[block_id]["attrs"].update(attrs)

    def set_block_attrs_with_retry(self, block_id, attrs, max_retries=2):
        self._record("set_block_attrs_with_retry")
        self.docs[block_id]["attrs"].update(attrs)

    # -- queries --

    def sql(self, stmt):
        self._record("sql")
        if self.index_lag:
            return []
        if "custom-source-id" in stmt:
            value = _unquote(re.search(r"value=('(?:[^']|'')*')", stmt).group(1))
            return [
                {"block_id": doc_id} for doc_id, doc in self.docs.items()
                if doc["attrs"].get("custom-source-id") == value
            ][:1]
        if "custom-merge-date" in stmt:
            box = _unquote(re.search(r"b\.box = ('(?:[^']|'')*')", stmt).group(1))
            date = _unquote(re.search(r"a\.value = ('(?:[^']|'')*')", stmt).group(1))
            title = _unquote(re.search(r"b\.content = ('(?:[^']|'')*')", stmt).group(1))
            by_attr, by_title = [], []
            for doc_id, doc in self.docs.items():
                if doc["notebook"] != box:
                    continue
                merge_date = doc["attrs"].get("custom-merge-date")
                if merge_date == date:
                    by_attr.append(doc_id)
                elif merge_date is None and doc["hpath"].rsplit("/", 1)[-1] == title:
                    by_title.append(doc_id)
            rows = [{"id": d} for d in by_attr + by_title]
            return rows[:1]
        return []

    def ls_notebooks(self):
        self._record("ls_notebooks")
        return list(self.notebooks)

    # -- assets --

    def upload_asset(self, data, filename, assets_dir):
        self._record("upload_asset")
        return {filename: f"{assets_dir.strip('/')}/{filename}"}

    def put_file(self, path, data, filename):
        self._record("put_file")

    def insert_local_assets(self, asset_paths, block_id=""):
        self._record("insert_local_assets")
        name = asset_paths[0].rsplit("/", 1)[-1]
        return {f"assets/{name}": f"![](assets/{name})"}

    def remove_file(self, path):
        self._record("remove_file")

    def get_workspace_dir(self):
        self._record("get_workspace_dir")
        return "/ws"

    # -- helpers for assertions --

    def doc_at(self, hpath, notebook="nb1"):
        ids = [
            doc_id for doc_id, doc in self.docs.items()
            if doc["notebook"] == notebook and doc["hpath"] == self._norm(hpath)
        ]
        return ids[0] if ids else None

    def ledger(self, doc_id):
        return json.loads(self.docs[doc_id]["attrs"].get("custom-merged-ids", "[]"))


def _unquote(literal):
    return literal[1:-1].replace("''", "'")


@pytest.fixture
def fake_siyuan():
    return FakeSiyuan()


def make_item(item_id, title="An article", saved_at="2025-01-15T08:30:00Z", **extra):
    """Raw source node, the shape the GraphQL API returns."""
    node = {
        "id": item_id,
        "title": title,
        "url": f"https://example.com/{item_id}",
        "savedAt": saved_at,
        "content": f"Body of {item_id}",
        "highlights": [],
        "labels": [],
    }
    node.update(extra)
    return node


def make_article(item_id, title="An article", saved_at="2025-01-15T08:30:00Z", **extra):
    from notehelper.models import Article

    return Article.from_dict(make_item(item_id, title, saved_at, **extra))
