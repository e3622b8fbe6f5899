"""Utility functions for storage migration.

Path, filename and matching helpers shared by the inventory, repair and
consolidation services, plus a few formatting helpers used in reports.
"""

import difflib
import posixpath
import re
from collections.abc import Iterable, Iterator
from typing import TypeVar

T = TypeVar("T")

_NORMALIZE_RE = re.compile(r"[^a-z0-9.]")
_SIGNATURE_VOLATILE_RE = re.compile(r"(0x[0-9a-f]+|\d+|'[^']*'|\"[^\"]*\")", re.IGNORECASE)


def format_size(size_bytes: int | float) -> str:
    """Format bytes into human-readable string.

    Examples:
        >>> format_size(0)
        '0 B'
        >>> format_size(1024)
        '1.0 KB'
    """
    if size_bytes == 0:
        return "0 B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as a short human-readable string."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def clean_path(path: str) -> str:
    """Normalize an object path: forward slashes, no leading/trailing slash, no dot segments."""
    path = path.replace("\\", "/").strip("/")
    if not path:
        return ""
    normalized = posixpath.normpath(path)
    if normalized in (".", ""):
        return ""
    if normalized.startswith(".."):
        raise ValueError(f"Path escapes its location: {path}")
    return normalized


def join_path(*parts: str) -> str:
    """Join path segments, ignoring empty ones."""
    return clean_path("/".join(p.strip("/") for p in parts if p and p.strip("/")))


def parent_dir(path: str) -> str:
    """Directory part of an object path ("" for root-level objects)."""
    return posixpath.dirname(clean_path(path))


def basename(path: str) -> str:
    return posixpath.basename(clean_path(path))


def split_extension(filename: str) -> tuple[str, str]:
    """Split a filename into (stem, lowercase extension without dot)."""
    stem, ext = posixpath.splitext(filename)
    return stem, ext.lstrip(".").lower()


def normalize_filename(filename: str) -> str:
    """Lowercase and strip every character other than [a-z0-9.]."""
    return _NORMALIZE_RE.sub("", filename.lower())


def extension_family(extension: str, families: Iterable[Iterable[str]]) -> tuple[str, ...]:
    """Return the sorted family an extension belongs to (itself when unlisted)."""
    extension = extension.lower().lstrip(".")
    for family in families:
        members = {e.lower().lstrip(".") for e in family}
        if extension in members:
            return tuple(sorted(members))
    return (extension,)


def family_key(filename: str, families: Iterable[Iterable[str]]) -> str:
    """Key that makes e.g. ``photo.jpg`` and ``photo.jpeg`` collide."""
    stem, ext = split_extension(filename)
    family = extension_family(ext, families)
    return f"{normalize_filename(stem)}.{family[0]}"


def same_extension_family(a: str, b: str, families: Iterable[Iterable[str]]) -> bool:
    families = [list(f) for f in families]
    return extension_family(split_extension(a)[1], families) == extension_family(
        split_extension(b)[1], families
    )


def filename_similarity(a: str, b: str) -> float:
    """Similarity ratio of two filenames after normalization (0.0-1.0)."""
    return difflib.SequenceMatcher(None, normalize_filename(a), normalize_filename(b)).ratio()


def is_in_originals_path(path: str, markers: Iterable[str]) -> bool:
    """True when any directory segment of ``path`` equals an originals marker."""
    segments = [s.lower() for s in clean_path(path).split("/")[:-1]]
    return any(marker.lower() in segments for marker in markers)


def error_signature(error: BaseException, operation: str = "") -> str:
    """Stable signature for an error: type plus message with volatile parts masked.

    Numbers, hex addresses and quoted values are masked so that the same
    failure on different items maps onto one signature.

    Examples:
        >>> error_signature(OSError("timeout after 30s on 'a.jpg'"), "read")
        'read:OSError:timeout after #s on #'
    """
    message = _SIGNATURE_VOLATILE_RE.sub("#", str(error))[:200]
    prefix = f"{operation}:" if operation else ""
    return f"{prefix}{type(error).__name__}:{message}"


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield lists of at most ``size`` items."""
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
