"""Store images and attachments in the SiYuan asset space.

``upload_asset`` tries three independent strategies in order and never raises:

1. ``asset/upload``: the kernel picks (and dedups) the final name.
2. ``file/putFile`` straight into the target folder under a unique name.
3. ``file/putFile`` into a private temp folder, then ``asset/insertLocalAssets``
   to import it; the temp file is removed afterwards.

``localize_resources`` rewrites remote links in rendered markdown to point at
the uploaded copies, leaving any link it can't store untouched.
"""

import logging
import os
import random
import re
import string
import time
from typing import Dict, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from notehelper import config, siyuan_client, templates
from notehelper.models import ImageMode, UploadResult

log = logging.getLogger(__name__)

_IMAGE_LINK_RE = re.compile(r"!\[([^\]]*)\]\((https?://[^)]+)\)")
_ATTACHMENT_LINK_RE = re.compile(r"(?<!!)\[([^\]]+)\]\((https?://[^)]+)\)")

# Links to these are pages, not files worth storing
_PAGE_EXTENSIONS = {"", "htm", "html", "php", "asp", "aspx", "jsp", "shtml"}

_DEFAULT_IMAGE_FOLDER = "assets/NoteHelper/images/{{ date }}"
_DEFAULT_ATTACHMENT_FOLDER = "assets/NoteHelper/attachments"


def _split_ext(filename: str) -> Tuple[str, str]:
    base, dot, ext = filename.rpartition(".")
    if not dot or not base:
        return filename, ""
    return base, ext


def generate_unique_filename(filename: str) -> str:
    """``name.png`` -> ``name-<ms>-<6 random chars>.png``."""
    base, ext = _split_ext(filename)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    unique = f"{base}-{int(time.time() * 1000)}-{suffix}"
    return f"{unique}.{ext}" if ext else unique


def extract_path_from_succ_map(succ_map: Dict[str, str], filename: str) -> str:
    """Find the stored path for *filename*; the kernel may have renamed it."""
    if succ_map.get(filename):
        return succ_map[filename]
    base, _ = _split_ext(filename)
    for key, value in succ_map.items():
        if base in key:
            return value
    return next(iter(succ_map.values()), "")


# -- Tiers --


def _via_asset_api(client, data: bytes, filename: str, target_dir: str) -> UploadResult:
    succ_map = client.upload_asset(data, filename, target_dir)
    path = extract_path_from_succ_map(succ_map, filename)
    if not path:
        return UploadResult(success=False, error="asset/upload returned no path")
    return UploadResult(success=True, path=path)


def _via_put_file(client, data: bytes, filename: str, target_dir: str) -> UploadResult:
    unique = generate_unique_filename(filename)
    target_dir = target_dir.strip("/")
    client.put_file(f"/data/{target_dir}/{unique}", data, unique)
    return UploadResult(success=True, path=f"{target_dir}/{unique}")


def _via_insert_local(client, data: bytes, filename: str) -> UploadResult:
    unique = generate_unique_filename(filename)
    temp_path = f"{config.ASSET_TEMP_DIR}/{unique}"
    client.put_file(temp_path, data, unique)
    try:
        workspace = client.get_workspace_dir()
        absolute = f"{workspace}{temp_path}".replace("\\", "/")
        succ_map = client.insert_local_assets([absolute])
    finally:
        _remove_quietly(client, temp_path)

    asset_path = next(iter(succ_map), "")
    if not asset_path:
        return UploadResult(success=False, error="insertLocalAssets returned no path")
    return UploadResult(success=True, path=asset_path)


def _remove_quietly(client, path: str) -> None:
    try:
        client.remove_file(path)
    except (siyuan_client.SiyuanError, requests.exceptions.RequestException) as e:
        log.debug("Could not remove temp file %s: %s", path, e)


def upload_asset(data: bytes, filename: str, target_dir: str, client=siyuan_client) -> UploadResult:
    """Store *data* under *target_dir*. Returns a failed result instead of raising."""
    tiers = [
        ("asset/upload", lambda: _via_asset_api(client, data, filename, target_dir)),
        ("putFile", lambda: _via_put_file(client, data, filename, target_dir)),
        ("insertLocalAssets", lambda: _via_insert_local(client, data, filename)),
    ]
    for name, attempt in tiers:
        try:
            result = attempt()
        except Exception as e:
            log.warning("Asset upload via %s failed for %s: %s", name, filename, e)
            continue
        if result.success:
            log.info("Stored %s via %s: %s", filename, name, result.path)
            return result
        log.warning("Asset upload via %s failed for %s: %s", name, filename, result.error)

    log.error("All asset upload strategies failed for %s", filename)
    return UploadResult(success=False, error=f"All upload strategies failed for {filename}")


# -- Content localization --


def _download(url: str) -> bytes:
    resp = requests.get(url, timeout=config.HTTP_TIMEOUT)
    resp.raise_for_status()
    return resp.content


def _filename_from_url(url: str) -> str:
    name = os.path.basename(unquote(urlparse(url).path))
    return templates.sanitize_file_name(name)


def _url_extension(url: str) -> str:
    _, ext = _split_ext(_filename_from_url(url))
    return ext.lower()


def _store_remote(url: str, filename: str, folder: str, client) -> Optional[str]:
    try:
        data = _download(url)
    except requests.exceptions.RequestException as e:
        log.warning("Could not download %s: %s", url, e)
        return None
    result = upload_asset(data, filename, folder, client=client)
    return result.path if result.success else None


def localize_resources(content: str, client=siyuan_client) -> str:
    """Replace remote image and file links with uploaded asset paths."""
    if not content:
        return content

    # url -> stored path (None when storing failed), so each url is fetched once
    stored: Dict[str, Optional[str]] = {}

    if ImageMode.parse(config.IMAGE_MODE) == ImageMode.LOCAL:
        image_folder = templates.render_asset_folder(
            config.IMAGE_FOLDER_TEMPLATE, _DEFAULT_IMAGE_FOLDER,
        )
        for m in list(_IMAGE_LINK_RE.finditer(content)):
            alt, url = m.group(1), m.group(2)
            if url not in stored:
                filename = _filename_from_url(url)
                if not _split_ext(filename)[1]:
                    filename = f"image-{int(time.time() * 1000)}.jpg"
                stored[url] = _store_remote(url, filename, image_folder, client)
            path = stored[url]
            if path:
                content = content.replace(m.group(0), f"![{alt}]({path})")

    attachment_folder = templates.render_asset_folder(
        config.ATTACHMENT_FOLDER, _DEFAULT_ATTACHMENT_FOLDER,
    )
    for m in list(_ATTACHMENT_LINK_RE.finditer(content)):
        name, url = m.group(1), m.group(2)
        ext = _url_extension(url)
        if ext in _PAGE_EXTENSIONS:
            continue
        if url not in stored:
            filename = templates.sanitize_file_name(name)
            if not _split_ext(filename)[1]:
                filename = f"{filename}.{ext}"
            stored[url] = _store_remote(url, filename, attachment_folder, client)
        path = stored[url]
        if path:
            content = content.replace(m.group(0), f"[{name}]({path})")

    return content
