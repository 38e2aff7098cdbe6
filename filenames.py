import math
import os
import time
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlparse

from image_transform import DEFAULT_QUALITY

HEADER_SAFE_CHARS = "!#$%&'()*+,-.:;=@[]^_`{|}~"

RESIZE = "resize"
CONVERT = "convert"

FALLBACK_NAMES = {
    RESIZE: ("resized", ".jpg"),
    CONVERT: ("converted", ".webp"),
}


def _base_filename(source_url: str) -> Optional[str]:
    try:
        parsed = urlparse(source_url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    # Percent escapes stay encoded; raw non-ASCII, quotes and backslashes get
    # escaped so the name is always a safe header value.
    segment = quote(parsed.path.rsplit("/", 1)[-1], safe=HEADER_SAFE_CHARS)
    return segment or None


def source_extension(source_url: str) -> str:
    """Lower-cased extension of the URL's last path segment, e.g. ``.jpg``."""
    base = _base_filename(source_url)
    if not base:
        return ""
    return os.path.splitext(base)[1].lower()


def _fallback_name(operation: str) -> str:
    prefix, extension = FALLBACK_NAMES[operation]
    return f"{prefix}_{int(time.time() * 1000)}{extension}"


def _is_positive(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def suggest_filename(source_url: str, operation: str, params: Mapping[str, Any]) -> str:
    """Derive a download name for the transformed image.

    Only the final path segment of ``source_url`` is used, so query strings
    and directories never appear in the result. A URL without a scheme, host
    or file segment falls back to ``resized_<ms>.jpg`` or
    ``converted_<ms>.webp``.
    """
    if operation not in FALLBACK_NAMES:
        raise ValueError(f"Unknown operation '{operation}'.")
    base = _base_filename(source_url)
    if not base:
        return _fallback_name(operation)

    stem, extension = os.path.splitext(base)
    if operation == RESIZE:
        suffix = f"_{params['width']}w"
        blur = params.get("blur")
        if _is_positive(blur):
            suffix += f"_blur{blur}"
    else:
        extension = ".webp"
        suffix = ""
        quality = params.get("quality")
        if isinstance(quality, (int, float)) and math.isfinite(quality) and quality != DEFAULT_QUALITY:
            suffix = f"_q{quality:g}"
    return f"{stem}{suffix}{extension}"
