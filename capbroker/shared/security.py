"""
Security module - Defense in Depth.
Handles secret reference parsing, path canonicalization and secret scrubbing.

Every provider receives paths that went through canonicalize_secret_path(),
so traversal is rejected in one place regardless of backend.
"""

import logging
import os
import posixpath
import re
from typing import Iterable, Optional

from .constants import MIN_SCRUB_LENGTH, REDACTED
from .errors import BadRequestError, InvalidSecretReferenceError
from .models import ProviderReference

logger = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9_-]*)://(.+)$")
_ENCODED_TOKENS = ("%2e", "%2f", "%5c")
_HEADER_FORBIDDEN_RE = re.compile(r"[\r\n\x00]")


def parse_reference(reference: str, default_provider: str) -> ProviderReference:
    """
    Parse `provider://path` or a bare path bound to `default_provider`.

    The path part is returned canonicalized.
    """
    if not isinstance(reference, str) or not reference.strip():
        raise InvalidSecretReferenceError("Secret reference must be a non-empty string")
    match = _REFERENCE_RE.match(reference)
    if match:
        provider, raw_path = match.group(1), match.group(2)
    elif "://" in reference:
        raise InvalidSecretReferenceError(f"Malformed secret reference scheme in {reference.split('://', 1)[0]!r}")
    else:
        provider, raw_path = default_provider, reference
    return ProviderReference(provider=provider, path=canonicalize_secret_path(raw_path))


def canonicalize_secret_path(path: str) -> str:
    """
    Canonicalize a provider path. No traversal.

    Rejects NUL bytes, backslashes and any `..` segment; drops `.` and
    empty segments. The result is relative and `/`-separated.
    """
    if not path:
        raise InvalidSecretReferenceError("Secret path is empty")
    if "\x00" in path or "\\" in path:
        raise InvalidSecretReferenceError("Secret path contains forbidden characters")
    segments = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            logger.warning("Path traversal blocked in secret reference")
            raise InvalidSecretReferenceError("Secret path must not contain '..' segments")
        segments.append(segment)
    if not segments:
        raise InvalidSecretReferenceError("Secret path is empty")
    return "/".join(segments)


def is_within_root(root: str, candidate: str) -> bool:
    """True if `candidate` resolves (symlinks included) inside `root`."""
    try:
        real_root = os.path.realpath(root)
        resolved = os.path.realpath(candidate)
    except (ValueError, OSError):
        return False
    return resolved == real_root or resolved.startswith(real_root + os.sep)


def canonicalize_request_path(path: str) -> str:
    """
    Canonicalize an agent-supplied API path (query string preserved).

    Dot segments are resolved so that policy evaluation sees the path the
    upstream will see; a path that climbs above `/` is rejected, as is any
    percent-encoded dot segment or separator.
    """
    if not isinstance(path, str) or not path:
        raise BadRequestError("Request path is required")
    if "\x00" in path or "\\" in path:
        raise BadRequestError("Request path contains forbidden characters")
    route, sep, query = path.partition("?")
    lowered = route.lower()
    if any(token in lowered for token in _ENCODED_TOKENS):
        raise BadRequestError("Request path contains encoded separators or dot segments")
    if not route.startswith("/"):
        route = "/" + route
    depth = 0
    for segment in route.split("/"):
        if segment == "..":
            depth -= 1
            if depth < 0:
                raise BadRequestError("Request path escapes the service root")
        elif segment not in ("", "."):
            depth += 1
    normalized = posixpath.normpath(route)
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if route.endswith("/") and normalized != "/":
        normalized += "/"
    return normalized + (sep + query if sep else "")


def scrub_secrets(text: Optional[str], secrets: Iterable[str]) -> Optional[str]:
    """
    Replace every occurrence of each secret value in `text` with a marker.

    Values shorter than MIN_SCRUB_LENGTH are left alone so upstream bodies
    pass through intact.
    """
    if not text:
        return text
    # Longest first, so a secret that contains another is replaced whole.
    for value in sorted({s for s in secrets if s and len(s) >= MIN_SCRUB_LENGTH}, key=len, reverse=True):
        if value in text:
            text = text.replace(value, REDACTED)
    return text


def has_forbidden_header_chars(text: str) -> bool:
    """True if `text` contains CR, LF or NUL and cannot go on the wire."""
    return bool(_HEADER_FORBIDDEN_RE.search(text))
