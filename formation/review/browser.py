"""
Open the review page in the user's default browser.
"""

import webbrowser


class BrowserLaunchError(RuntimeError):
    pass


def open_browser(url: str) -> None:
    """Open url in a new browser tab. Raises BrowserLaunchError if no browser could be started."""
    try:
        opened = webbrowser.open(url, new=2)
    except webbrowser.Error as e:
        raise BrowserLaunchError(f"Could not open a browser for {url}: {e}") from e
    if not opened:
        raise BrowserLaunchError(f"No browser available to open {url}")
