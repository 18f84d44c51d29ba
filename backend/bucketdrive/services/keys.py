"""Key and prefix rules for the flat object namespace.

Keys are used literally: nothing here normalizes ``..`` or strips slashes.
Instead anything that could escape the intended prefix is rejected.
"""
import re
import secrets
import string

from bucketdrive.config import settings
from bucketdrive.services.errors import ValidationError

FOLDER_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.\-]")
_SUFFIX_ALPHABET = string.ascii_letters + string.digits
SUFFIX_LENGTH = 6
MAX_KEY_LENGTH = 1024


def _check_segments(value: str, what: str) -> None:
    if len(value) > MAX_KEY_LENGTH:
        raise ValidationError(f"{what} is too long")
    if value.startswith("/") or "\\" in value:
        raise ValidationError(f"Invalid {what}: {value!r}")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
        raise ValidationError(f"Invalid {what}: control characters are not allowed")
    segments = value.split("/")
    if value.endswith("/"):
        segments = segments[:-1]
    for segment in segments:
        if segment in ("", ".", ".."):
            raise ValidationError(f"Path traversal detected in {what}: {value!r}")


def validate_prefix(prefix: str, *, allow_reserved: bool = False) -> str:
    """Return ``prefix`` unchanged if it is "" or a clean ``a/b/`` style prefix."""
    if prefix == "":
        return prefix
    if not prefix.endswith("/"):
        raise ValidationError(f"Invalid prefix: {prefix!r} must end with '/'")
    _check_segments(prefix, "prefix")
    if not allow_reserved and is_reserved(prefix):
        raise ValidationError(f"Prefix {prefix!r} is reserved")
    return prefix


def validate_key(key: str, *, allow_reserved: bool = False) -> str:
    """Return ``key`` unchanged if it names an object (not a folder marker)."""
    if not key or key.endswith("/"):
        raise ValidationError(f"Invalid object key: {key!r}")
    _check_segments(key, "object key")
    if not allow_reserved and is_reserved(key):
        raise ValidationError(f"Object key {key!r} is in a reserved namespace")
    return key


def validate_folder_name(folder_name: str) -> str:
    if not folder_name or not FOLDER_NAME_RE.match(folder_name):
        raise ValidationError(
            "Invalid folder name. Names may only contain letters, digits, hyphens and underscores."
        )
    return folder_name


def is_reserved(key: str) -> bool:
    return key.startswith(settings.THUMBNAIL_PREFIX)


def reserved_directory() -> str:
    """Top-level directory name of the thumbnail namespace, hidden from root listings."""
    return settings.THUMBNAIL_PREFIX.split("/", 1)[0]


def thumbnail_key_for(key: str) -> str:
    return f"{settings.THUMBNAIL_PREFIX}{key}"


def folder_key(prefix: str, folder_name: str) -> str:
    return f"{prefix}{folder_name}/"


def leaf_name(key: str) -> str:
    return key.rstrip("/").rsplit("/", 1)[-1]


def sanitize_filename(file_name: str) -> str:
    """Keep unicode letters/digits, ``_``, ``.`` and ``-``; everything else becomes ``_``."""
    return _UNSAFE_FILENAME_CHARS.sub("_", file_name.strip())


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def derive_object_key(prefix: str, file_name: str, suffix: str | None = None) -> tuple[str, str]:
    """Build ``{prefix}{stem}-{suffix}.{ext}``. Returns (key, display name)."""
    safe = sanitize_filename(file_name)
    stem, dot, ext = safe.rpartition(".")
    if not dot:
        stem, ext = safe, ""
    stem = stem.strip(".") or "file"
    suffix = suffix or random_suffix()
    name = f"{stem}-{suffix}.{ext}" if ext else f"{stem}-{suffix}"
    return f"{prefix}{name}", name
