"""
Upload store.

Uploaded media lands in <data>/uploads, optionally namespaced by project.
Writes are streamed in chunks so the size ceiling is enforced without
holding the whole file in memory; an oversize upload leaves nothing behind.
Uploading never triggers execution.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

_SAFE_NAME = re.compile(r"[^a-zA-Z0-9._-]+")
_SAFE_PROJECT = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class UploadError(Exception):
    """
    Upload rejected.

    Attributes:
        code: NO_FILE, UNSUPPORTED_MEDIA_TYPE, FILE_TOO_LARGE or INPUT_ERROR
        status_code: HTTP status for the rejection
    """

    def __init__(self, code: str, message: str, status_code: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class StoredUpload:
    file_id: str
    file_path: str
    public_url: str
    filename: str
    size: int
    mimetype: str
    project_id: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {
            "ok": True,
            "fileId": self.file_id,
            "filePath": self.file_path,
            "publicUrl": self.public_url,
            "filename": self.filename,
            "size": self.size,
            "mimetype": self.mimetype,
        }
        if self.project_id:
            body["projectId"] = self.project_id
        return body


def safe_filename(filename: Optional[str], default: str = "upload.bin") -> str:
    """Strip directories and anything outside [a-zA-Z0-9._-]."""
    name = Path(filename or "").name
    name = _SAFE_NAME.sub("_", name).strip("._")
    return name or default


class UploadStore:
    """
    Args:
        root: Uploads directory
        max_file_size: Byte ceiling per upload
        allowed_mime_types: Whitelist of content types
        public_prefix: URL prefix the uploads directory is served under
    """

    def __init__(
        self,
        root: Path,
        max_file_size: int,
        allowed_mime_types: Iterable[str],
        public_prefix: str = "/uploads",
    ):
        self.root = Path(root)
        self.max_file_size = max_file_size
        self.allowed_mime_types = frozenset(m.lower() for m in allowed_mime_types)
        self.public_prefix = public_prefix.rstrip("/")

    def check_mimetype(self, mimetype: Optional[str]) -> str:
        """
        Raises:
            UploadError: UNSUPPORTED_MEDIA_TYPE (415)
        """
        normalized = (mimetype or "").split(";")[0].strip().lower()
        if normalized not in self.allowed_mime_types:
            raise UploadError(
                "UNSUPPORTED_MEDIA_TYPE",
                f"Unsupported file type: {normalized or 'unknown'}",
                415,
            )
        return normalized

    def save(
        self,
        stream: Optional[BinaryIO],
        filename: Optional[str],
        mimetype: Optional[str],
        project_id: Optional[str] = None,
    ) -> StoredUpload:
        """
        Validate and persist one upload.

        Args:
            stream: Readable binary file object (None when no file part was sent)
            filename: Client-supplied filename (sanitized here)
            mimetype: Client-supplied content type
            project_id: Optional namespace

        Returns:
            StoredUpload

        Raises:
            UploadError: NO_FILE (400), INPUT_ERROR (400, bad projectId),
                UNSUPPORTED_MEDIA_TYPE (415), FILE_TOO_LARGE (413)
        """
        if stream is None:
            raise UploadError("NO_FILE", "No file uploaded", 400)
        normalized = self.check_mimetype(mimetype)
        if project_id is not None and not _SAFE_PROJECT.match(project_id):
            raise UploadError("INPUT_ERROR", f"Invalid projectId: {project_id!r}", 400)

        original = safe_filename(filename)
        file_id = uuid.uuid4().hex
        stored_name = f"{file_id}{Path(original).suffix.lower()}"
        relative = f"{project_id}/{stored_name}" if project_id else stored_name
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        try:
            with open(target, "wb") as fh:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_file_size:
                        raise UploadError(
                            "FILE_TOO_LARGE",
                            f"File exceeds the {self.max_file_size} byte limit",
                            413,
                        )
                    fh.write(chunk)
        except UploadError:
            target.unlink(missing_ok=True)
            logger.warning(f"[Upload] Rejected {original}: over {self.max_file_size} bytes")
            raise
        except BaseException:
            # Disconnects and write errors must not leave a truncated file
            target.unlink(missing_ok=True)
            logger.warning(f"[Upload] Aborted {original} after {written} bytes")
            raise

        logger.info(f"[Upload] Stored {original} as {relative} ({written} bytes, {normalized})")
        return StoredUpload(
            file_id=file_id,
            file_path=str(target.resolve()),
            public_url=f"{self.public_prefix}/{relative}",
            filename=original,
            size=written,
            mimetype=normalized,
            project_id=project_id,
        )
