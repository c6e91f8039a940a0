"""Plant-care web search: URL construction and browser hand-off."""

from __future__ import annotations

import logging
import webbrowser
from typing import Protocol
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DOMAIN = "www.google.com"
DEFAULT_SEARCH_SUFFIX = "plant care"


def build_search_url(
    label: str,
    domain: str = DEFAULT_SEARCH_DOMAIN,
    suffix: str = DEFAULT_SEARCH_SUFFIX,
) -> str:
    """Return ``https://<domain>/search?q=<label>+<suffix>``.

    Whitespace becomes ``+`` and any other reserved character is
    percent-encoded, e.g. ``"Rose Plant"`` ->
    ``https://www.google.com/search?q=Rose+Plant+plant+care``.
    """
    terms = [quote_plus(part) for part in (label.strip(), suffix.strip()) if part]
    return f"https://{domain}/search?q={'+'.join(terms)}"


class SearchLauncher(Protocol):
    """Opens a URL in an external browsing context."""

    def open(self, url: str) -> bool:
        """Open ``url``; return whether the platform accepted the request."""
        ...


class WebBrowserLauncher:
    """Launcher backed by the ``webbrowser`` module."""

    def open(self, url: str) -> bool:
        try:
            opened = webbrowser.open(url, new=2)
        except webbrowser.Error:
            logger.warning("Could not open browser for %s", url, exc_info=True)
            return False
        if not opened:
            logger.warning("No browser available to open %s", url)
        return opened


class NullLauncher:
    """Launcher that only logs; used when browser hand-off is disabled."""

    def open(self, url: str) -> bool:
        logger.info("Browser hand-off disabled, search URL: %s", url)
        return False
