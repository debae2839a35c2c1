"""Cookie persistence for browsing contexts."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_VALID_SAME_SITE = ("Strict", "Lax", "None")


def load_cookies(cookies_file: Path) -> list[dict[str, Any]]:
    """Read cookies saved by ``save_cookies``.

    Invalid ``sameSite`` values are rewritten to ``"None"`` so the engine
    accepts them.

    Returns:
        List of cookie dicts, empty if the file does not exist

    Raises:
        ValueError: If the file is not a JSON list of objects
    """
    if not cookies_file.exists():
        return []

    data = json.loads(cookies_file.read_text(encoding="utf-8"))
    if not isinstance(data, list) or not all(isinstance(cookie, dict) for cookie in data):
        raise ValueError(f"Expected a list of cookie objects in {cookies_file}")

    for cookie in data:
        same_site = cookie.get("sameSite")
        if same_site is not None and same_site not in _VALID_SAME_SITE:
            logger.warning("Fixed invalid sameSite value '%s' to 'None' for cookie %s", same_site, cookie.get("name"))
            cookie["sameSite"] = "None"

    logger.info("Loaded %d cookies from %s", len(data), cookies_file)
    return data


def save_cookies(cookies_file: Path, cookies: list[dict[str, Any]]) -> None:
    """Atomically write cookies to ``cookies_file``, creating parent dirs."""
    cookies_file.parent.mkdir(parents=True, exist_ok=True)

    # Atomic write: write to temp file then rename
    fd, tmp_path = tempfile.mkstemp(dir=cookies_file.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cookies, f, indent=2, ensure_ascii=False)
        Path(tmp_path).replace(cookies_file)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise

    logger.debug("Saved %d cookies to %s", len(cookies), cookies_file)
