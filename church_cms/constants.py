"""Global constants for uploads, roles and request limits."""
import re
from urllib.parse import unquote

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
# Stored untouched: MIME type -> (Pillow format, file extension)
ANIMATED_TYPES = {"image/gif": ("GIF", "gif")}

DEFAULT_MAX_UPLOAD_SIZE = 5 * 1024 * 1024
DEFAULT_IMAGE_WIDTH = 1200
DEFAULT_IMAGE_HEIGHT = 800
DEFAULT_IMAGE_QUALITY = 80
DEFAULT_IMAGE_FORMAT = "webp"

# Pillow format name -> (file extension, MIME type)
TARGET_FORMATS = {
    "webp": ("webp", "image/webp"),
    "jpeg": ("jpg", "image/jpeg"),
    "png": ("png", "image/png"),
}

DEFAULT_UPLOADS_ROOT = "./public/uploads"
UPLOADS_URL_PREFIX = "/uploads"
DEFAULT_UPLOAD_FOLDER = "uploads"
BLOG_UPLOAD_FOLDER = "blogs"
MINISTRY_UPLOAD_FOLDER = "ministries"

UPLOAD_CHUNK_SIZE = 1024 * 1024

MAX_FOLDER_LENGTH = 64

DEFAULT_PAGE = 1
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100

AUTH_HEADER = "Authorization"
AUTH_SCHEME = "Bearer"

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def get_extension(filename: str) -> str:
    """Extract file extension (without dot) safely."""
    if not filename or '.' not in filename:
        return ''
    return str(filename).lower().rsplit('.', 1)[-1]


def sanitize_folder(folder: str) -> str:
    """Sanitize a caller-supplied upload folder name to prevent path traversal.

    Decodes URL-encoded characters, strips separators and leading dots, and
    keeps only alphanumerics, dash and underscore.
    """
    folder = unquote(str(folder or ''))
    sanitized = folder.strip().strip('/\\').lstrip('.')

    if '/' in sanitized or '\\' in sanitized or '..' in sanitized:
        raise ValueError("Invalid folder: nested paths are not allowed")

    sanitized = ''.join(c for c in sanitized if c.isalnum() or c in '-_')

    if not sanitized:
        raise ValueError("Invalid folder: empty after sanitization")
    if len(sanitized) > MAX_FOLDER_LENGTH:
        raise ValueError(f"Invalid folder: exceeds maximum length of {MAX_FOLDER_LENGTH}")

    return sanitized


def slugify(title: str) -> str:
    """Lowercase, collapse runs of non-alphanumerics to '-', trim dashes."""
    return _SLUG_RE.sub('-', str(title or '').lower()).strip('-')
