"""Tests for the SiYuan kernel client: envelope handling, id guards, retries."""

from unittest.mock import MagicMock, patch

import pytest
import requests


def _envelope(data=None, code=0, msg="", status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = {}
    resp.json.return_value = {"code": code, "msg": msg, "data": data}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(response=resp)
    else:
        resp.raise_for_status = MagicMock()
    return resp


class TestEnvelope:
    @patch("notehelper.retry.requests.request")
    def test_returns_data_on_code_zero(self, mock_request):
        from notehelper.siyuan_client import get_block_attrs

        mock_request.return_value = _envelope({"custom-source-id": "a"})
        assert get_block_attrs("20250101120000-abcdefg") == {"custom-source-id": "a"}

    @patch("notehelper.retry.requests.request")
    def test_nonzero_code_raises(self, mock_request):
        from notehelper.siyuan_client import SiyuanError, get_block_attrs

        mock_request.return_value = _envelope(code=-1, msg="block not found")
        with pytest.raises(SiyuanError, match="block not found"):
            get_block_attrs("20250101120000-abcdefg")

    @patch("notehelper.retry.requests.request")
    def test_invalid_json_raises(self, mock_request):
        from notehelper.siyuan_client import SiyuanError, sql

        resp = _envelope()
        resp.json.side_effect = ValueError("no json")
        mock_request.return_value = resp
        with pytest.raises(SiyuanError, match="invalid JSON"):
            sql("SELECT 1")

    @patch("notehelper.retry.requests.request")
    def test_token_header_and_url(self, mock_request):
        from notehelper.siyuan_client import get_block_attrs

        mock_request.return_value = _envelope({})
        get_block_attrs("20250101120000-abcdefg")

        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://127.0.0.1:6806/api/attr/getBlockAttrs")
        assert kwargs["headers"] == {"Authorization": "Token tok"}
        assert kwargs["json"] == {"id": "20250101120000-abcdefg"}

    @patch("notehelper.retry.requests.request")
    def test_no_header_without_token(self, mock_request, monkeypatch):
        from notehelper import config
        from notehelper.siyuan_client import ls_notebooks

        monkeypatch.setattr(config, "SIYUAN_API_TOKEN", "")
        mock_request.return_value = _envelope({"notebooks": [{"id": "nb1"}]})
        assert ls_notebooks() == [{"id": "nb1"}]
        assert mock_request.call_args.kwargs["headers"] == {}


class TestIdGuards:
    def test_looks_like_timestamp(self):
        from notehelper.siyuan_client import looks_like_timestamp

        assert looks_like_timestamp("2025-01-15T08:30:00Z")
        assert not looks_like_timestamp("20250115083000-abcdefg")
        assert not looks_like_timestamp(None)

    @patch("notehelper.retry.requests.request")
    def test_get_ids_drops_timestamps(self, mock_request):
        from notehelper.siyuan_client import get_ids_by_hpath

        mock_request.return_value = _envelope(
            ["2025-01-15T08:30:00Z", "20250115083000-abcdefg"],
        )
        assert get_ids_by_hpath("nb1", "NoteHelper/2025-01-15/Title.md") == ["20250115083000-abcdefg"]
        assert mock_request.call_args.kwargs["json"] == {
            "notebook": "nb1", "path": "/NoteHelper/2025-01-15/Title",
        }

    @patch("notehelper.retry.requests.request")
    def test_get_ids_handles_null(self, mock_request):
        from notehelper.siyuan_client import get_ids_by_hpath

        mock_request.return_value = _envelope(None)
        assert get_ids_by_hpath("nb1", "/missing") == []

    @patch("notehelper.retry.requests.request")
    def test_update_block_refuses_timestamp_id(self, mock_request):
        from notehelper.siyuan_client import SiyuanError, update_block

        with pytest.raises(SiyuanError):
            update_block("2025-01-15T08:30:00Z", "text")
        mock_request.assert_not_called()

    @patch("notehelper.retry.requests.request")
    def test_create_doc_rejects_timestamp_id(self, mock_request):
        from notehelper.siyuan_client import SiyuanError, create_doc_with_md

        mock_request.return_value = _envelope("2025-01-15T08:30:00Z")
        with pytest.raises(SiyuanError):
            create_doc_with_md("nb1", "/a", "text")

    def test_normalize_hpath(self):
        from notehelper.siyuan_client import normalize_hpath

        assert normalize_hpath("a//b/c.md") == "/a/b/c"
        assert normalize_hpath("\\a\\b\\") == "/a/b"
        assert normalize_hpath("/already/fine") == "/already/fine"

    def test_quote_sql(self):
        from notehelper.siyuan_client import quote_sql

        assert quote_sql("it's") == "'it''s'"


class TestAttrRetry:
    @patch("notehelper.siyuan_client.time.sleep")
    @patch("notehelper.siyuan_client.set_block_attrs")
    def test_retries_with_growing_delay(self, mock_set, mock_sleep):
        from notehelper.siyuan_client import SiyuanError, set_block_attrs_with_retry

        mock_set.side_effect = [SiyuanError("busy"), SiyuanError("busy"), None]
        set_block_attrs_with_retry("20250101120000-abcdefg", {"a": "1"})
        assert mock_set.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]
        assert all(c.kwargs == {"max_retries": 0} for c in mock_set.call_args_list)

    @patch("notehelper.siyuan_client.time.sleep")
    @patch("notehelper.siyuan_client.set_block_attrs")
    def test_raises_after_last_attempt(self, mock_set, mock_sleep):
        from notehelper.siyuan_client import SiyuanError, set_block_attrs_with_retry

        mock_set.side_effect = SiyuanError("busy")
        with pytest.raises(SiyuanError):
            set_block_attrs_with_retry("20250101120000-abcdefg", {"a": "1"})
        assert mock_set.call_count == 3

    @patch("notehelper.siyuan_client.time.sleep")
    @patch("notehelper.siyuan_client.set_block_attrs")
    def test_transport_errors_retried(self, mock_set, mock_sleep):
        from notehelper.siyuan_client import set_block_attrs_with_retry

        mock_set.side_effect = [requests.exceptions.ConnectionError("reset"), None]
        set_block_attrs_with_retry("20250101120000-abcdefg", {"a": "1"})
        assert mock_set.call_count == 2

    @patch("notehelper.siyuan_client.time.sleep")
    @patch("notehelper.retry.requests.request")
    def test_one_request_per_attempt(self, mock_request, mock_sleep):
        from notehelper.siyuan_client import set_block_attrs_with_retry

        mock_request.return_value = _envelope(status=503)
        with pytest.raises(requests.exceptions.HTTPError):
            set_block_attrs_with_retry("20250101120000-abcdefg", {"a": "1"})
        assert mock_request.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]


class TestAssetsAndFiles:
    @patch("notehelper.retry.time.sleep")
    @patch("notehelper.retry.requests.request")
    def test_upload_not_retried_on_500(self, mock_request, mock_sleep):
        from notehelper.siyuan_client import upload_asset

        mock_request.return_value = _envelope(status=500)
        with pytest.raises(requests.exceptions.HTTPError):
            upload_asset(b"x", "a.png", "assets/img")
        assert mock_request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("notehelper.retry.requests.request")
    def test_upload_multipart_form(self, mock_request):
        from notehelper.siyuan_client import upload_asset

        mock_request.return_value = _envelope({"succMap": {"a.png": "assets/img/a-1.png"}})
        assert upload_asset(b"x", "a.png", "assets/img") == {"a.png": "assets/img/a-1.png"}

        kwargs = mock_request.call_args.kwargs
        assert kwargs["data"] == {"assetsDirPath": "/assets/img/"}
        assert kwargs["files"] == {"file[]": ("a.png", b"x")}
        assert "json" not in kwargs

    @patch("notehelper.retry.requests.request")
    def test_insert_local_assets_returns_succ_map(self, mock_request):
        from notehelper.siyuan_client import insert_local_assets

        mock_request.return_value = _envelope({"succMap": {"assets/a.png": "![](assets/a.png)"}})
        assert insert_local_assets(["/ws/temp/a.png"]) == {"assets/a.png": "![](assets/a.png)"}
        assert mock_request.call_args.kwargs["json"] == {"assetPaths": ["/ws/temp/a.png"], "id": ""}

    def test_workspace_dir_from_config(self):
        from notehelper.siyuan_client import get_workspace_dir

        assert get_workspace_dir() == "/ws"

    @patch("notehelper.retry.requests.request")
    def test_workspace_dir_from_kernel(self, mock_request, monkeypatch):
        from notehelper import config
        from notehelper.siyuan_client import get_workspace_dir

        monkeypatch.setattr(config, "SIYUAN_WORKSPACE_DIR", "")
        mock_request.return_value = _envelope({"conf": {"system": {"workspaceDir": "/home/u/SiYuan/"}}})
        assert get_workspace_dir() == "/home/u/SiYuan"
