import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger(__name__)

# Config directory: respects XDG_CONFIG_HOME, overridable with NOTEHELPER_CONFIG_DIR
CONFIG_DIR = Path(
    os.environ.get("NOTEHELPER_CONFIG_DIR", "")
    or (
        Path(os.environ.get("XDG_CONFIG_HOME", "") or Path.home() / ".config")
        / "notehelper"
    )
)
CONFIG_DIR.mkdir(parents=True, exist_ok=True)

# .env file: prefer CWD (for dev installs), then config dir
ENV_PATH = CONFIG_DIR / ".env"
if not ENV_PATH.exists() and (Path.cwd() / ".env").exists():
    ENV_PATH = Path.cwd() / ".env"

load_dotenv(ENV_PATH)


def _require(var: str) -> str:
    value = os.environ.get(var, "").strip()
    if not value or value.startswith("your_"):
        if not ENV_PATH.exists():
            print(f"Error: No config found. Create {CONFIG_DIR / '.env'} to get started.")
        else:
            print(f"Error: {var} is not set. Fill it in {ENV_PATH}")
        sys.exit(1)
    return value


def _env_bool(var: str, default: str) -> bool:
    return os.environ.get(var, default).strip().lower() in ("true", "1", "yes")


def _env_template(var: str, default: str) -> str:
    # Templates may be multi-line in .env; keep inner whitespace intact
    value = os.environ.get(var, "")
    return value if value.strip() else default


DEFAULT_ARTICLE_TEMPLATE = """\
# {{ title }}
#NoteHelper

## Source
[Original]({{ original_url }})

## Content
{{ content }}
{% if highlights %}
## Highlights
{% for h in highlights %}
> {{ h.text }}{% if h.note %}

{{ h.note }}{% endif %}
{% endfor %}{% endif %}"""

DEFAULT_MESSAGE_TEMPLATE = """\
---
## {{ date_saved }}
{{ content }}"""

# Appended to a bucket after a "---" separator, so no rule of its own
DEFAULT_MERGE_MESSAGE_TEMPLATE = """\
## {{ date_saved }}
{{ content }}"""


# Required for sync, loaded lazily via ensure_loaded()
NOTEHELPER_ENDPOINT: str = os.environ.get("NOTEHELPER_ENDPOINT", "").strip()
NOTEHELPER_API_KEY: str = os.environ.get("NOTEHELPER_API_KEY", "").strip()
NOTEHELPER_CUSTOM_QUERY: str = os.environ.get("NOTEHELPER_CUSTOM_QUERY", "").strip()

# SiYuan kernel
SIYUAN_API_URL: str = os.environ.get("SIYUAN_API_URL", "http://127.0.0.1:6806").strip().rstrip("/")
SIYUAN_API_TOKEN: str = os.environ.get("SIYUAN_API_TOKEN", "").strip()
SIYUAN_WORKSPACE_DIR: str = os.environ.get("SIYUAN_WORKSPACE_DIR", "").strip()
TARGET_NOTEBOOK: str = os.environ.get("TARGET_NOTEBOOK", "").strip()

# Sync behaviour
MERGE_MODE: str = os.environ.get("MERGE_MODE", "messages").strip().lower()
PAGE_SIZE: int = int(os.environ.get("PAGE_SIZE", "15"))
SYNC_LOOKBACK_HOURS: int = int(os.environ.get("SYNC_LOOKBACK_HOURS", "12"))
SYNC_FREQUENCY: int = int(os.environ.get("SYNC_FREQUENCY", "0"))
SYNC_ON_START: bool = _env_bool("SYNC_ON_START", "false")

# Document locations
FOLDER_TEMPLATE: str = os.environ.get("FOLDER_TEMPLATE", "NoteHelper/{{ date }}").strip()
FOLDER_DATE_FORMAT: str = os.environ.get("FOLDER_DATE_FORMAT", "%Y-%m-%d").strip()
FILENAME_TEMPLATE: str = os.environ.get("FILENAME_TEMPLATE", "{{ title }}").strip()
MERGE_FOLDER_TEMPLATE: str = os.environ.get(
    "MERGE_FOLDER_TEMPLATE", "NoteHelper/Messages/{{ date }}",
).strip()
MERGE_FOLDER_DATE_FORMAT: str = os.environ.get("MERGE_FOLDER_DATE_FORMAT", "%Y-%m").strip()
SINGLE_FILE_TEMPLATE: str = os.environ.get("SINGLE_FILE_TEMPLATE", "同步助手_{{ date }}").strip()
SINGLE_FILE_DATE_FORMAT: str = os.environ.get("SINGLE_FILE_DATE_FORMAT", "%Y-%m-%d").strip()

# Content templates (jinja2)
ARTICLE_TEMPLATE: str = _env_template("ARTICLE_TEMPLATE", DEFAULT_ARTICLE_TEMPLATE)
MESSAGE_TEMPLATE: str = _env_template("MESSAGE_TEMPLATE", DEFAULT_MESSAGE_TEMPLATE)
MERGE_MESSAGE_TEMPLATE: str = _env_template("MERGE_MESSAGE_TEMPLATE", DEFAULT_MERGE_MESSAGE_TEMPLATE)
FRONT_MATTER_TEMPLATE: str = _env_template("FRONT_MATTER_TEMPLATE", "")
FRONT_MATTER_VARIABLES: list = [
    v.strip() for v in os.environ.get("FRONT_MATTER_VARIABLES", "").split(",") if v.strip()
]
DATE_SAVED_FORMAT: str = os.environ.get("DATE_SAVED_FORMAT", "%Y-%m-%d %H:%M:%S").strip()
DATE_HIGHLIGHTED_FORMAT: str = os.environ.get("DATE_HIGHLIGHTED_FORMAT", "%Y-%m-%d %H:%M:%S").strip()

# Assets
IMAGE_MODE: str = os.environ.get("IMAGE_MODE", "local").strip().lower()
IMAGE_FOLDER_TEMPLATE: str = os.environ.get(
    "IMAGE_FOLDER_TEMPLATE", "assets/NoteHelper/images/{{ date }}",
).strip()
ATTACHMENT_FOLDER: str = os.environ.get("ATTACHMENT_FOLDER", "assets/NoteHelper/attachments").strip()
ASSET_TEMP_DIR: str = os.environ.get("ASSET_TEMP_DIR", "/temp/notehelper").strip().rstrip("/")

HTTP_TIMEOUT: int = int(os.environ.get("HTTP_TIMEOUT", "30"))
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").strip().upper()


_loaded = False


def ensure_loaded() -> None:
    """Validate required config vars. Call at the start of sync commands."""
    global _loaded, NOTEHELPER_ENDPOINT, NOTEHELPER_API_KEY
    if _loaded:
        return
    _loaded = True
    NOTEHELPER_ENDPOINT = _require("NOTEHELPER_ENDPOINT")
    NOTEHELPER_API_KEY = _require("NOTEHELPER_API_KEY")
    _validate_optional()


def _validate_optional() -> None:
    """Warn about optional settings that look wrong but don't block a run."""
    if MERGE_MODE not in ("none", "messages", "all"):
        log.warning("MERGE_MODE '%s' is not one of none/messages/all", MERGE_MODE)
    if IMAGE_MODE not in ("local", "remote"):
        log.warning("IMAGE_MODE '%s' is not one of local/remote", IMAGE_MODE)
    if not SIYUAN_API_URL.startswith(("http://", "https://")):
        log.warning("SIYUAN_API_URL should start with http:// or https://")
    if PAGE_SIZE < 1:
        log.warning("PAGE_SIZE must be at least 1, got %d", PAGE_SIZE)


def setup_logging() -> None:
    """Configure logging for the tool. Call once at each entry point."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
