"""Request header presets.

Each function returns a fresh dictionary so callers may extend it freely.
"""

from robustfetch.settings import get_settings


def sec_bot_headers() -> dict[str, str]:
    """Headers identifying an automated SEC EDGAR client.

    The SEC requires automated clients to declare a contact in the
    User-Agent; the value comes from ``ROBUSTFETCH_SEC_USER_AGENT``.

    Returns:
        Header dictionary.
    """
    return {
        "User-Agent": get_settings().sec_user_agent,
        "Accept-Encoding": "gzip, deflate",
        "Host": "www.sec.gov",
    }


def browser_headers() -> dict[str, str]:
    """Headers of a desktop Chrome browser."""
    return {
        "User-Agent": (
            "Mozilla/5.0 (Macintosh; ARM Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/117.0.5938.149 Safari/537.36"
        ),
    }


def rss_feed_headers() -> dict[str, str]:
    """Headers of a feed reader requesting RSS/XML content."""
    return {
        "User-Agent": (
            "Mozilla/5.0 (compatible; Feedfetcher-Google; "
            "+http://www.google.com/feedfetcher.html)"
        ),
        "Accept": "application/rss+xml, application/xml, text/xml",
    }
