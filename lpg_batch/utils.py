"""
Utility functions: config loading, logging setup, and helpers.

  - setup_logging()         : console + per-entry-point file handler on the project logger
  - load_config()           : config.yaml with validated defaults
  - capture_diagnostics()   : screenshot, falling back to an HTML dump
  - parse_wait_seconds()    : "MM:SS" countdowns shown by the rate-limit banner
"""

import os
import re
import logging
from datetime import datetime

import yaml


PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(PROJECT_ROOT, "logs")
SCREENSHOT_DIR = os.path.join(LOG_DIR, "screenshots")
HTMLDUMP_DIR   = os.path.join(LOG_DIR, "htmldumps")

LOGGER_NAME = "lpg_batch"


CONSOLE_FORMAT = "[%(asctime)s] %(levelname)-8s %(message)s"
FILE_FORMAT = "[%(asctime)s] %(levelname)-8s %(threadName)s %(message)s"


def setup_logging(component: str = "run", log_dir: str = LOG_DIR, verbose: bool = False) -> logging.Logger:
    """
    Attach console and file handlers to the `lpg_batch` logger.

    Each entry point gets its own log file, `<component>_<timestamp>.log`, so
    a server's job threads and a CLI run never interleave in one file.  The
    file records DEBUG and the worker thread name; the console shows INFO
    (DEBUG with verbose=True).  Calling it again is a no-op.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{component}_{datetime.now():%Y%m%d_%H%M%S}.log")

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))

    logfile = logging.FileHandler(log_file, encoding="utf-8")
    logfile.setLevel(logging.DEBUG)
    logfile.setFormatter(logging.Formatter(FILE_FORMAT))

    for handler in (console, logfile):
        logger.addHandler(handler)

    logger.info(f"📝 Logging {component} to {log_file}")
    return logger


def load_config(config_path: str = None) -> dict:
    """Load and validate config.yaml, applying safe defaults for optional keys."""
    if config_path is None:
        config_path = os.path.join(PROJECT_ROOT, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    # Portal endpoints (always needed)
    for key in ("login_url", "verify_url"):
        if not config.get(key):
            raise ValueError(f"Missing required config key: '{key}'")

    # Credentials are only needed for `main.py run`; the server takes them per job
    config.setdefault("username", None)
    config.setdefault("password", None)

    # Browser
    config.setdefault("headless", True)
    config.setdefault("browser_executable", None)

    # Timeouts (milliseconds) — element waits stay short, the rate-limit
    # backoff is parsed from the page instead.
    for key, default in (
        ("element_timeout", 5_000),
        ("settle_timeout", 3_000),
        ("navigation_timeout", 30_000),
    ):
        value = config.setdefault(key, default)
        if not isinstance(value, int) or value < 100:
            raise ValueError(f"{key} must be int >= 100 (ms), got: {value!r}")

    buffer = config.setdefault("rate_limit_buffer", 1)
    if not isinstance(buffer, (int, float)) or buffer < 0:
        raise ValueError(f"rate_limit_buffer must be a number >= 0, got: {buffer!r}")

    # Job bookkeeping
    per_item = config.setdefault("per_item_seconds", 5)
    if not isinstance(per_item, (int, float)) or per_item <= 0:
        raise ValueError(f"per_item_seconds must be a number > 0, got: {per_item!r}")

    for key, default, minimum in (
        ("job_retention_seconds", 3600, 60),
        ("janitor_interval", 300, 5),
        ("report_max_age", 86_400, 60),
    ):
        value = config.setdefault(key, default)
        if not isinstance(value, int) or value < minimum:
            raise ValueError(f"{key} must be int >= {minimum}, got: {value!r}")

    reports_dir = config.setdefault("reports_dir", "reports")
    if not os.path.isabs(reports_dir):
        config["reports_dir"] = os.path.join(PROJECT_ROOT, reports_dir)

    # HTTP server
    config.setdefault("host", "0.0.0.0")
    port = config.setdefault("port", 3000)
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ValueError(f"port must be a valid TCP port, got: {port!r}")

    return config


# ── Rate-limit countdown ─────────────────────────────────────────────────

_COUNTDOWN_RE = re.compile(r"(\d{1,2}):(\d{2})")


def parse_wait_seconds(text: str) -> int | None:
    """
    Parse the remaining wait from a banner like 'Mohon tunggu hingga 01:30'.

    The first MM:SS group is taken as minutes and seconds remaining.
    Returns None when the text has no countdown.
    """
    if not text:
        return None
    match = _COUNTDOWN_RE.search(text)
    if not match:
        return None
    minutes, seconds = int(match.group(1)), int(match.group(2))
    return minutes * 60 + seconds


def format_duration(seconds: float) -> str:
    """Render a duration as M:SS (minutes are not wrapped at 60)."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


# ── Diagnostics ──────────────────────────────────────────────────────────

def _page_identity(page) -> tuple[str, str]:
    """(url, title) of the page, with placeholders when the page is wedged."""
    identity = []
    for read in (lambda: page.url, page.title):
        try:
            identity.append(read())
        except Exception:
            identity.append("<unavailable>")
    return identity[0], identity[1]


def capture_diagnostics(
    page,
    label: str = "error",
    screenshot_dir: str = SCREENSHOT_DIR,
    htmldump_dir: str = HTMLDUMP_DIR,
) -> str | None:
    """
    Save what the portal was showing when a NIK could not be classified.

    A viewport screenshot is tried first (5s cap).  A page that cannot paint
    still has a DOM, so the fallback is an HTML dump.  Returns the saved
    path, or None when neither could be written.
    """
    logger = logging.getLogger(LOGGER_NAME)
    stem = f"{datetime.now():%Y%m%d_%H%M%S}_{re.sub(r'[^0-9A-Za-z_-]', '_', label)[:80]}"

    url, title = _page_identity(page)
    logger.debug(f"[diag] {label}: url={url} title={title!r}")

    try:
        os.makedirs(screenshot_dir, exist_ok=True)
        path = os.path.join(screenshot_dir, f"{stem}.png")
        page.screenshot(path=path, full_page=True, timeout=5_000)
        logger.info(f"📸 Screenshot saved: {path}")
        return path
    except Exception as e:
        logger.debug(f"[diag] screenshot failed for {label} ({e}), dumping HTML instead")

    try:
        os.makedirs(htmldump_dir, exist_ok=True)
        path = os.path.join(htmldump_dir, f"{stem}.html")
        with open(path, "w", encoding="utf-8") as f:
            f.write(page.content())
        logger.info(f"📄 HTML dump saved: {path}")
        return path
    except Exception as e:
        logger.warning(f"[diag] no diagnostics captured for {label}: {e}")
        return None
