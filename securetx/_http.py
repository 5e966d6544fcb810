"""
Shared HTTP helpers for backend clients.
"""
import os
import urllib.parse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def validate_backend_url(url: str, name: str = "backend_url") -> str:
    """
    Ensure a backend URL is safe to send bearer tokens to.

    Args:
        url: URL to validate
        name: Parameter name used in error messages

    Returns:
        The URL without a trailing slash

    Raises:
        ValueError: If the URL is not https and not a loopback address, unless
            SECURETX_INSECURE_BACKEND=1 is set
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid {name} '{url}'")
    host = parsed.hostname or ""
    if parsed.scheme != "https" and host not in LOCAL_HOSTS:
        if os.environ.get("SECURETX_INSECURE_BACKEND") != "1":
            raise ValueError(
                f"{name} must use https:// for security (got: {parsed.scheme}://). "
                "Set SECURETX_INSECURE_BACKEND=1 to allow HTTP for development."
            )
    return url.rstrip("/")


def build_session(retry_count: int = 3) -> requests.Session:
    """Create a requests session that retries 5xx responses and connection errors."""
    session = requests.Session()
    retries = Retry(
        total=retry_count,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
        connect=retry_count,
        read=retry_count,
        other=retry_count
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.headers.update({"Content-Type": "application/json"})
    return session


def redact(token: str) -> str:
    return f"[REDACTED - {len(token)} chars]"
