"""
file_service.py — File naming, MIME detection and the blob storage-path convention.

Storage paths are decided once at write time and stored on the metadata row
(``storage_path`` + ``storage_version``). ``storage_path_from_url`` only exists
for rows written before that, whose blob location has to be recovered from
the public URL.
"""
import hashlib
import re
from urllib.parse import unquote, urlparse

from errors import ParseFailure

STORAGE_VERSION = 2
CHUNK_PREFIX = "chunks"

# Extension → MIME type map (avoids python-magic cross-platform issues)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "json": "application/json",
    "xml":  "application/xml",
    "zip":  "application/zip",
    "tar":  "application/x-tar",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mp3":  "audio/mpeg",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}

_EXT_RE = re.compile(r"^[a-z0-9]{1,10}$")


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, "application/octet-stream")
    return "application/octet-stream"


def sanitize_filename(filename: str) -> str:
    """Strip non-ASCII characters and path components from a display name."""
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = name.encode("ascii", "ignore").decode("ascii")
    name = "".join(ch for ch in name if ch.isprintable()).strip()
    return name or "file"


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    ext = filename.rsplit(".", 1)[-1].lower()
    return f".{ext}" if _EXT_RE.match(ext) else ""


def scope_folder(scope) -> str:
    """Opaque folder for a scope. Private-space keys never appear in object names."""
    return hashlib.sha256(scope.id.encode("utf-8")).hexdigest()[:16]


def build_storage_path(scope, file_id: str, filename: str) -> str:
    return f"v{STORAGE_VERSION}/{scope_folder(scope)}/{file_id}{file_extension(filename)}"


def chunk_prefix(session_id: str) -> str:
    return f"{CHUNK_PREFIX}/{session_id}/"


def chunk_path(session_id: str, index: int) -> str:
    return f"{chunk_prefix(session_id)}{index:06d}"


def chunk_index(path: str) -> int:
    """Inverse of chunk_path; raises ValueError for foreign keys."""
    return int(path.rsplit("/", 1)[-1])


def storage_path_from_url(url: str, bucket: str) -> str:
    """Recover a bucket-relative blob path from a stored URL.

    Understands the three shapes found in older rows:
      https://host/storage/v1/object/public/<bucket>/<path>
      https://host/storage/v1/object/<bucket>/<path>
      <bucket>/<path>
    """
    if not url:
        raise ParseFailure("empty storage URL")

    path = unquote(urlparse(url).path if "://" in url else url).lstrip("/")
    for marker in (f"object/public/{bucket}/", f"object/{bucket}/"):
        if marker in path:
            return _checked(path.split(marker, 1)[1], url)
    if path.startswith(f"{bucket}/"):
        return _checked(path[len(bucket) + 1:], url)

    raise ParseFailure(f"unrecognised storage URL: {url}")


def _checked(path: str, url: str) -> str:
    path = path.split("?", 1)[0]
    if not path or path.endswith("/") or ".." in path.split("/"):
        raise ParseFailure(f"no object path in storage URL: {url}")
    return path


def resolve_storage_path(shared_file, bucket: str) -> str:
    """Blob path for a metadata row, preferring the stored convention."""
    if shared_file.storage_path:
        return shared_file.storage_path
    return storage_path_from_url(shared_file.url, bucket)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
