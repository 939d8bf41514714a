"""SiYuan kernel API client.

Every call is a POST to ``/api/...`` answered with ``{code, msg, data}``;
``code != 0`` is a failure and raises SiyuanError. This module is the only
place that talks to the kernel.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

import requests

from notehelper import config
from notehelper.retry import MAX_RETRIES, request_with_retry

log = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T")


class SiyuanError(Exception):
    """The kernel rejected a request or returned something unusable."""


def looks_like_timestamp(value: Any) -> bool:
    """True when a lookup returned an ISO timestamp where a block id belongs.

    Some kernel versions answer path lookups with a timestamp; such values
    must never be used as a document id.
    """
    return isinstance(value, str) and bool(_TIMESTAMP_RE.match(value))


def _headers() -> dict:
    if config.SIYUAN_API_TOKEN:
        return {"Authorization": f"Token {config.SIYUAN_API_TOKEN}"}
    return {}


def _url(path: str) -> str:
    return f"{config.SIYUAN_API_URL}/api/{path.lstrip('/')}"


def _post(path: str, payload: Optional[Dict] = None, max_retries: int = MAX_RETRIES, **kwargs) -> Any:
    """POST to the kernel and return the envelope's ``data``."""
    if payload is not None:
        kwargs["json"] = payload
    resp = request_with_retry(
        "POST", _url(path), service="SiYuan", max_retries=max_retries, headers=_headers(), **kwargs,
    )
    try:
        body = resp.json()
    except ValueError as exc:
        raise SiyuanError(f"{path}: invalid JSON response") from exc
    if body.get("code") != 0:
        raise SiyuanError(f"{path}: {body.get('msg') or 'code ' + str(body.get('code'))}")
    return body.get("data")


# -- Documents --


def create_doc_with_md(notebook: str, path: str, markdown: str) -> str:
    """Create a document at human-readable *path*. Returns the new doc id."""
    doc_id = _post("filetree/createDocWithMd", {
        "notebook": notebook,
        "path": path,
        "markdown": markdown,
    })
    if not doc_id or looks_like_timestamp(doc_id):
        raise SiyuanError(f"createDocWithMd returned an invalid id: {doc_id!r}")
    log.debug("Created document %s at %s", doc_id, path)
    return doc_id


def update_block(block_id: str, markdown: str) -> None:
    """Replace the full content of a block (or document) with markdown."""
    if looks_like_timestamp(block_id):
        raise SiyuanError(f"Refusing to update block with timestamp id {block_id!r}")
    _post("block/updateBlock", {
        "dataType": "markdown",
        "data": markdown,
        "id": block_id,
    })


def get_block_kramdown(block_id: str) -> str:
    data = _post("block/getBlockKramdown", {"id": block_id})
    return (data or {}).get("kramdown") or ""


def get_ids_by_hpath(notebook: str, hpath: str) -> List[str]:
    """Look up documents by human-readable path, straight from the file tree.

    The path is normalized to ``/a/b/c`` (no ``.md``). Timestamp-shaped
    results are dropped.
    """
    path = normalize_hpath(hpath)
    ids = _post("filetree/getIDsByHPath", {"notebook": notebook, "path": path}) or []
    valid = []
    for doc_id in ids:
        if looks_like_timestamp(doc_id):
            log.warning("getIDsByHPath returned a timestamp instead of an id: %s", doc_id)
            continue
        valid.append(doc_id)
    return valid


def normalize_hpath(hpath: str) -> str:
    path = re.sub(r"/+", "/", hpath.replace("\\", "/")).strip("/")
    if path.lower().endswith(".md"):
        path = path[:-3]
    return "/" + path


# -- Attributes --


def get_block_attrs(block_id: str) -> Dict[str, str]:
    return _post("attr/getBlockAttrs", {"id": block_id}) or {}


def set_block_attrs(block_id: str, attrs: Dict[str, str], max_retries: int = MAX_RETRIES) -> None:
    _post("attr/setBlockAttrs", {"id": block_id, "attrs": attrs}, max_retries=max_retries)


def set_block_attrs_with_retry(
    block_id: str, attrs: Dict[str, str], max_retries: int = 2,
) -> None:
    """Set attributes, retrying any failure with a 100ms, 200ms, ... backoff.

    Each attempt is a single request; raises the last error once retries
    are exhausted.
    """
    for attempt in range(max_retries + 1):
        try:
            set_block_attrs(block_id, attrs, max_retries=0)
            if attempt:
                log.debug("setBlockAttrs on %s succeeded on attempt %d", block_id, attempt + 1)
            return
        except (SiyuanError, requests.exceptions.RequestException) as e:
            log.warning(
                "setBlockAttrs on %s failed (attempt %d/%d): %s",
                block_id, attempt + 1, max_retries + 1, e,
            )
            if attempt == max_retries:
                raise
            time.sleep(0.1 * (attempt + 1))


# -- Queries --


def sql(stmt: str) -> List[Dict[str, Any]]:
    return _post("query/sql", {"stmt": stmt}) or []


def quote_sql(value: str) -> str:
    """Quote a string literal for the kernel's SQLite dialect."""
    return "'" + value.replace("'", "''") + "'"


def ls_notebooks() -> List[Dict[str, Any]]:
    data = _post("notebook/lsNotebooks", {}) or {}
    return data.get("notebooks") or []


# -- Assets and files --
# Each of these is a single attempt: the upload cascade does its own fallback.


def upload_asset(data: bytes, filename: str, assets_dir: str) -> Dict[str, str]:
    """Upload through the asset API. Returns the kernel's succMap."""
    result = _post(
        "asset/upload",
        max_retries=0,
        data={"assetsDirPath": "/" + assets_dir.strip("/") + "/"},
        files={"file[]": (filename, data)},
    )
    return (result or {}).get("succMap") or {}


def put_file(path: str, data: bytes, filename: str) -> None:
    """Write raw bytes to a workspace path such as ``/data/assets/x.png``."""
    _post(
        "file/putFile",
        max_retries=0,
        data={"path": path, "isDir": "false", "modTime": str(int(time.time()))},
        files={"file": (filename, data)},
    )


def insert_local_assets(asset_paths: List[str], block_id: str = "") -> Dict[str, str]:
    """Import files from absolute local paths into the asset store. Returns succMap."""
    result = _post(
        "asset/insertLocalAssets",
        {"assetPaths": asset_paths, "id": block_id},
        max_retries=0,
    )
    return (result or {}).get("succMap") or {}


def remove_file(path: str) -> None:
    _post("file/removeFile", {"path": path}, max_retries=0)


def get_workspace_dir() -> str:
    """Absolute workspace directory: config override, else the kernel's conf."""
    if config.SIYUAN_WORKSPACE_DIR:
        return config.SIYUAN_WORKSPACE_DIR.rstrip("/\\")
    conf = _post("system/getConf", {}) or {}
    workspace = (conf.get("conf") or {}).get("system", {}).get("workspaceDir", "")
    if not workspace:
        raise SiyuanError("Could not determine SiYuan workspace directory")
    return workspace.rstrip("/\\")
