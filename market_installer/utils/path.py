"""
Utilities for validating application identifiers, source URLs and the
registry's on-disk paths.
"""

import re
from pathlib import Path
from urllib.parse import urlparse

from pathvalidate import ValidationError, validate_filename

from market_installer.exceptions import InvalidRequestError
from market_installer.models.manifest import APP_ID_PATTERN

MAX_APP_ID_LENGTH = 100
INCOMING_PREFIX = ".incoming-"
JOB_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def sanitize_app_id(app_id: str) -> str:
    """Strips every character that may not appear in an application id."""
    return re.sub(r"[^a-zA-Z0-9._-]", "", app_id)[:MAX_APP_ID_LENGTH]


def validate_app_id(app_id: str) -> str:
    """
    Ensures an application id is safe to use as a directory and lock name.

    Raises:
        InvalidRequestError: If the id is empty, hidden, too long, or would be
        altered by sanitizing.
    """
    if not app_id or app_id != sanitize_app_id(app_id):
        raise InvalidRequestError(f"Invalid app ID: {app_id!r}")
    if not APP_ID_PATTERN.match(app_id) or app_id.startswith("."):
        raise InvalidRequestError(f"Invalid app ID: {app_id!r}")
    try:
        validate_filename(app_id, platform="auto")
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid app ID: {app_id!r} ({e})") from e
    return app_id


def validate_source_url(url: str) -> str:
    """Accepts only absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise InvalidRequestError(f"Invalid URL format: {url!r}") from e
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidRequestError(f"Invalid URL format: {url!r}")
    return url


def is_job_id(name: str) -> bool:
    """True for names shaped like the hex job ids the tracker hands out."""
    return bool(JOB_ID_PATTERN.match(name))


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)
