"""Open the inspector front-end.

PUBLIC API:
  - find_chrome: First Chromium-family executable on PATH
  - open_frontend: Launch a viewer pointed at the inspector URL
"""

import logging
import shutil
import subprocess
import webbrowser

__all__ = ["find_chrome", "open_frontend"]

logger = logging.getLogger(__name__)

CHROME_PATHS = [
    "google-chrome-stable",
    "google-chrome",
    "chromium-browser",
    "chromium",
    "microsoft-edge",
]


def find_chrome() -> str | None:
    for path in CHROME_PATHS:
        if shutil.which(path):
            return path
    return None


def open_frontend(url: str) -> bool:
    """Launch Chrome (or the default browser) at ``url``.

    Returns:
        True if a viewer was launched. Failures are logged, not raised.
    """
    chrome_exe = find_chrome()
    if chrome_exe:
        try:
            subprocess.Popen(
                [chrome_exe, url], start_new_session=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
            logger.info(f"Opened inspector in {chrome_exe}")
            return True
        except OSError as e:
            logger.warning(f"Failed to launch {chrome_exe}: {e}")

    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning(f"Failed to open inspector: {e}")
        return False
    if not opened:
        logger.warning(f"No browser available, open {url} manually")
    return opened
