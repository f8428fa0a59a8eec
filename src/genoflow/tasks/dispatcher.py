"""HTTP client forwarding admitted jobs to the processing service."""

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from genoflow.core.exceptions import DownstreamUnavailable
from genoflow.tasks.models import ProcessingJob, TaskSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRole:
    """Maps a filename pattern to a request field of the processing service."""

    field: str
    matches: Callable[[str], bool]
    value: Callable[[str], str] = lambda path: path


# Evaluated in order; the first matching path fills each role.
FILE_ROLES: tuple[FileRole, ...] = (
    FileRole("mat_path", lambda p: "matrix.mtx.gz" in p.lower(), posixpath.dirname),
    FileRole("barcodes_pos_path", lambda p: "barcodes_pos.tsv" in p.lower()),
    FileRole("npy_path", lambda p: p.lower().endswith(".npy")),
    FileRole("H5Path", lambda p: p.lower().endswith(".h5")),
    FileRole("H5ADPath", lambda p: p.lower().endswith(".h5ad")),
    FileRole("CSVGZPath", lambda p: ".csv.gz" in p.lower()),
)


def detect_file_roles(paths: list[str]) -> Dict[str, str]:
    """Return ``{field: value}`` for every role with a matching path."""
    roles: Dict[str, str] = {}
    for role in FILE_ROLES:
        match = next((p for p in paths if role.matches(p)), None)
        if match is not None:
            roles[role.field] = role.value(match)
    return roles


def build_payload(job: ProcessingJob, segment: Optional[TaskSegment] = None) -> Dict[str, Any]:
    """Build the JSON body sent to ``{base_url}/process``.

    Only the detected roles are attached. If no path matches a known role,
    the raw ``filePaths`` string is forwarded so the service can decide.
    """
    payload: Dict[str, Any] = {
        "taskId": job.id,
        "taskType": job.task_type,
        "dataFormat": job.data_format,
        "name": job.name,
    }
    roles = detect_file_roles(job.paths)
    if roles:
        payload.update(roles)
    else:
        payload["filePaths"] = job.file_paths

    if segment is not None:
        payload["segment"] = {"index": segment.index, "start": segment.start, "end": segment.end}
    return payload


class TaskDispatcher:
    """Posts job descriptors to the processing service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy-create and cache the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def submit(self, job: ProcessingJob, segment: Optional[TaskSegment] = None) -> Dict[str, Any]:
        """Send a job (or one segment of a large job) for processing.

        Args:
            job: Job to forward
            segment: Byte range for a large-job sub-task

        Returns:
            Parsed response body, or an empty dict for a non-JSON 2xx

        Raises:
            DownstreamUnavailable: On transport error, timeout or non-2xx status
        """
        payload = build_payload(job, segment)
        url = f"{self.base_url}/process"
        extra = {
            "job_id": job.id,
            "task_type": job.task_type,
            "segment": segment.index if segment else None,
            "process_url": url,
        }
        logger.info("Submitting job to processing service", extra=extra)

        try:
            response = await asyncio.wait_for(
                self._get_client().post(url, json=payload),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except asyncio.TimeoutError as e:
            logger.warning("Processing service timed out", extra={**extra, "timeout": self.timeout})
            raise DownstreamUnavailable(
                f"Processing service did not answer within {self.timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning(
                "Processing service rejected job",
                extra={**extra, "status_code": status_code, "error": e.response.text[:500]},
            )
            raise DownstreamUnavailable(
                f"Processing service returned {status_code}", status_code=status_code
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Processing service request failed",
                extra={**extra, "error": str(e), "error_type": type(e).__name__},
            )
            raise DownstreamUnavailable(f"Processing service unreachable: {e}") from e

        logger.info(
            "Processing service accepted job",
            extra={**extra, "status_code": response.status_code},
        )
        try:
            return response.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
