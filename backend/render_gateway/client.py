"""
HTTP client for the render gateway.

Every gateway response is JSON. A response that is not (an HTML error page
from a misrouted proxy, for instance) is a defect in its own right and is
reported as INVALID_CONTENT_TYPE / INVALID_JSON rather than as a job error.
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx

from .failures.catalog import ErrorCategory

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"done", "error", "partial_success"})


class GatewayClientError(Exception):
    """
    Attributes:
        code: Server error code, or HTTP_ERROR / INVALID_CONTENT_TYPE / INVALID_JSON
        status_code: HTTP status, when a response was received
        details: Server-provided details, if any
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class GatewayClient:
    """
    Args:
        base_url: Gateway root, e.g. http://127.0.0.1:3000
        client: httpx client to use instead of creating one
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:3000",
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayClientError(
                ErrorCategory.HTTP_ERROR.value, f"{method} {path} failed: {e}"
            ) from e
        return self._decode(response, f"{method} {path}")

    @staticmethod
    def _decode(response: httpx.Response, what: str) -> Dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            snippet = response.text[:200].replace("\n", " ")
            raise GatewayClientError(
                ErrorCategory.INVALID_CONTENT_TYPE.value,
                f"{what} returned {content_type or 'no content type'} "
                f"(HTTP {response.status_code}): {snippet}",
                response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayClientError(
                ErrorCategory.INVALID_JSON.value,
                f"{what} returned unparseable JSON (HTTP {response.status_code})",
                response.status_code,
            ) from e

        if not isinstance(body, dict):
            raise GatewayClientError(
                ErrorCategory.INVALID_JSON.value,
                f"{what} returned a JSON {type(body).__name__}, expected an object",
                response.status_code,
            )
        error = body.get("error")
        if isinstance(error, dict) and (body.get("ok") is False or response.status_code >= 400):
            raise GatewayClientError(
                error.get("code", ErrorCategory.HTTP_ERROR.value),
                error.get("message", f"HTTP {response.status_code}"),
                response.status_code,
                error.get("details"),
            )
        if response.status_code >= 400 and "ok" not in body:
            raise GatewayClientError(
                ErrorCategory.HTTP_ERROR.value, f"{what} failed with HTTP {response.status_code}",
                response.status_code,
            )
        # ok:false without an error object (health on a degraded host) is a normal body
        return body

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Health body. A degraded host (503, ok:false) is returned, not raised."""
        return self._request("GET", "/api/health")

    def upload(
        self,
        path: Union[str, Path],
        mimetype: str = "video/mp4",
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        path = Path(path)
        data = {"projectId": project_id} if project_id else None
        with open(path, "rb") as fh:
            return self._request(
                "POST", "/api/upload", files={"file": (path.name, fh, mimetype)}, data=data
            )

    def execute(self, source_path: str, **options: Any) -> Dict[str, Any]:
        """Submit a transform job. options use the API's names (trim, speed, resize, ...)."""
        return self._request("POST", "/api/execute", json={"sourcePath": source_path, **options})

    def execute_plan(
        self,
        source_video_url: str,
        plan: Dict[str, Any],
        output_name: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sourceVideoUrl": source_video_url, "plan": plan}
        if output_name:
            body["outputName"] = output_name
        if project_id:
            body["projectId"] = project_id
        return self._request("POST", "/api/execute-plan", json=body)

    def job_status(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/jobs/{job_id}")

    def job_logs(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/jobs/{job_id}/logs")

    def wait_for_job(
        self,
        job_id: str,
        timeout: float = 600.0,
        poll_interval: float = 1.0,
    ) -> Dict[str, Any]:
        """
        Poll until the job is terminal.

        Returns:
            The terminal status body (done, error or partial_success)

        Raises:
            TimeoutError: If the job is still running after timeout seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            status = self.job_status(job_id)
            if status.get("status") in TERMINAL_STATUSES:
                return status
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} still {status.get('status')} after {timeout:.0f}s")
            logger.debug(f"[Client] Job {job_id}: {status.get('status')} {status.get('progressPct')}%")
            time.sleep(poll_interval)
