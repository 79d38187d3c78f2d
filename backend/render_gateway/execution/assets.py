"""
Source asset resolution.

Plans reference media either by URL or by a path inside the gateway's
own data directories. Before encoding, every reference is turned into a
local file path:

- http(s) URLs are downloaded into the job's temp directory
- /uploads/... and /outputs/... public paths map onto the data directories
- other paths must resolve inside the uploads or outputs directory

Anything that escapes those roots is rejected as INPUT_ERROR.
"""

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Iterable, Optional
from urllib.parse import urlparse

import httpx

from ..failures.catalog import Stage
from .errors import (
    AssetAuthError,
    AssetDownloadError,
    ExecutionError,
    InvalidSourcePathError,
    SourceNotFoundError,
)

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


def is_remote(ref: str) -> bool:
    return urlparse(ref).scheme in ("http", "https")


class AssetResolver:
    """
    Maps plan asset references to local files.

    Args:
        uploads_dir: Root of uploaded media
        outputs_dir: Root of rendered outputs (re-usable as sources)
        temp_dir: Root for per-job downloads
        max_download_bytes: Remote assets above this size are refused
        client: httpx client; one is created when omitted
    """

    def __init__(
        self,
        uploads_dir: Path,
        outputs_dir: Path,
        temp_dir: Path,
        max_download_bytes: int,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 60.0,
    ):
        self.uploads_dir = Path(uploads_dir).resolve()
        self.outputs_dir = Path(outputs_dir).resolve()
        self.temp_dir = Path(temp_dir).resolve()
        self.max_download_bytes = max_download_bytes
        self._client = client or httpx.Client(timeout=timeout_seconds, follow_redirects=True)

    # -------------------------------------------------------------------------
    # Local paths
    # -------------------------------------------------------------------------

    def local_path(self, ref: str) -> Path:
        """
        Resolve a non-URL reference to a path inside an allowed root.

        Raises:
            InvalidSourcePathError: On '..' segments or a path outside the roots
        """
        if ".." in Path(ref).parts:
            raise InvalidSourcePathError(f"Invalid source path: {ref}")

        if ref.startswith("/uploads/"):
            candidate = self.uploads_dir / ref[len("/uploads/"):]
        elif ref.startswith("/outputs/"):
            candidate = self.outputs_dir / ref[len("/outputs/"):]
        elif os.path.isabs(ref):
            candidate = Path(ref)
        else:
            candidate = self.uploads_dir / ref

        resolved = candidate.resolve()
        for root in (self.uploads_dir, self.outputs_dir, self.temp_dir):
            if resolved == root or root in resolved.parents:
                return resolved
        raise InvalidSourcePathError(f"Source path is outside the allowed directories: {ref}")

    def check_reference(self, ref: str) -> None:
        """
        Admission-time check: URLs must be http(s); local refs must exist and be non-empty.

        Raises:
            InvalidSourcePathError, SourceNotFoundError
        """
        if not ref:
            raise SourceNotFoundError("sourcePath is required")
        if is_remote(ref):
            return
        if "://" in ref:
            raise InvalidSourcePathError(f"Unsupported source URL scheme: {ref}")
        path = self.local_path(ref)
        if not path.is_file():
            raise SourceNotFoundError(f"Source file not found: {ref}")
        if path.stat().st_size == 0:
            raise SourceNotFoundError(f"Source file is empty: {ref}")

    # -------------------------------------------------------------------------
    # Remote downloads
    # -------------------------------------------------------------------------

    def job_temp_dir(self, job_id: str) -> Path:
        return self.temp_dir / job_id

    def download(self, url: str, job_id: str) -> Path:
        """
        Download url into the job's temp directory.

        Files are named by md5(url) so repeated references share one download.

        Raises:
            AssetAuthError: 401/403 from the host
            AssetDownloadError: Transport failure, timeout or other HTTP error
        """
        ext = Path(urlparse(url).path).suffix or ".mp4"
        target_dir = self.job_temp_dir(job_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / (hashlib.md5(url.encode("utf-8")).hexdigest() + ext)
        if target.is_file() and target.stat().st_size > 0:
            return target

        logger.info(f"[Assets] Downloading {url} -> {target}")
        partial = target.with_suffix(target.suffix + ".part")
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code in (401, 403):
                    label = "Unauthorized" if response.status_code == 401 else "Forbidden"
                    raise AssetAuthError(f"{response.status_code} {label} fetching {url}")
                if response.status_code == 404:
                    raise AssetDownloadError(f"404 Not Found fetching {url}")
                if response.status_code >= 400:
                    raise AssetDownloadError(
                        f"Download failed: HTTP {response.status_code} fetching {url}"
                    )
                written = 0
                with open(partial, "wb") as fh:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        written += len(chunk)
                        if written > self.max_download_bytes:
                            raise ExecutionError(
                                f"Remote asset exceeds the {self.max_download_bytes} byte limit: {url}",
                                stage=Stage.VALIDATION,
                            )
                        fh.write(chunk)
        except httpx.TimeoutException as e:
            partial.unlink(missing_ok=True)
            raise AssetDownloadError(f"Download timed out fetching {url}: {e}") from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            partial.unlink(missing_ok=True)
            raise AssetDownloadError(f"Invalid URL {url}: {e}") from e
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise AssetDownloadError(f"Download failed: connection error fetching {url}: {e}") from e
        except ExecutionError:
            partial.unlink(missing_ok=True)
            raise

        if written == 0:
            partial.unlink(missing_ok=True)
            raise SourceNotFoundError(f"Downloaded asset is empty: {url}")
        partial.replace(target)
        logger.info(f"[Assets] Downloaded {written} bytes from {url}")
        return target

    # -------------------------------------------------------------------------
    # Whole plans
    # -------------------------------------------------------------------------

    def resolve(self, ref: str, job_id: str) -> Path:
        """Local file for one reference, downloading if remote."""
        if is_remote(ref):
            return self.download(ref, job_id)
        path = self.local_path(ref)
        if not path.is_file():
            raise SourceNotFoundError(f"Source file not found: {ref}")
        if path.stat().st_size == 0:
            raise SourceNotFoundError(f"Source file is empty: {ref}")
        return path

    def resolve_all(self, refs: Iterable[str], job_id: str) -> Dict[str, str]:
        return {ref: str(self.resolve(ref, job_id)) for ref in refs}

    def cleanup(self, job_id: str) -> None:
        """Remove the job's downloads. Missing directories are fine."""
        shutil.rmtree(self.job_temp_dir(job_id), ignore_errors=True)

    def close(self) -> None:
        self._client.close()
