"""HTTP client for the capture analysis backend."""

import logging
import os
from typing import List, Optional

import httpx
from pydantic import ValidationError

from ..api.schemas import AnalysisFilters, AnalysisJob, Packet, UploadResponse
from .capture import validate_capture
from .errors import DataIntegrityError, TransientNotFound, TransportFailure, UploadError

logger = logging.getLogger(__name__)


class BackendClient:
    """Thin wrapper over the backend job API.

    ``http`` is any ``httpx.Client`` whose ``base_url`` points at the backend,
    which includes ``fastapi.testclient.TestClient``.
    """

    def __init__(self, http: httpx.Client):
        self.http = http

    @classmethod
    def from_url(cls, base_url: str, timeout: float = 10.0) -> "BackendClient":
        return cls(httpx.Client(base_url=base_url, timeout=timeout))

    def close(self) -> None:
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def upload(self, file_path) -> str:
        """Validate and upload a capture, returning the new job id."""
        validate_capture(file_path)
        name = os.path.basename(os.fspath(file_path))
        try:
            with open(file_path, "rb") as f:
                response = self.http.post(
                    "/api/upload",
                    files={"file": (name, f, "application/vnd.tcpdump.pcap")},
                )
            response.raise_for_status()
            job_id = UploadResponse.model_validate(response.json()).id
        except httpx.HTTPStatusError as e:
            raise UploadError(f"Upload failed with HTTP {e.response.status_code}: {_error_detail(e.response)}") from e
        except httpx.HTTPError as e:
            raise UploadError(f"Upload failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise UploadError(f"Upload response did not contain a job id: {e}") from e

        logger.info("Uploaded %s as analysis %s", name, job_id)
        return job_id

    def get_analysis(self, job_id: str, filters: Optional[AnalysisFilters] = None) -> AnalysisJob:
        params = filters.as_params() if filters else {}
        response = self._get(f"/api/analysis/{job_id}", params=params)
        if response.status_code == 404:
            raise TransientNotFound(job_id)
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise TransportFailure(f"Unexpected analysis payload for {job_id}")
        try:
            return AnalysisJob.model_validate({**payload, "id": job_id})
        except ValidationError as e:
            raise TransportFailure(f"Malformed analysis payload for {job_id}: {e}") from e

    def get_stream_packets(self, stream_id: str) -> List[Packet]:
        response = self._get(f"/api/stream/{stream_id}/packets")
        if response.status_code == 404:
            raise TransportFailure(f"Stream {stream_id} not found")
        payload = self._json(response)
        if not isinstance(payload, list):
            raise DataIntegrityError(f"Expected a packet list for stream {stream_id}")
        try:
            return [Packet.model_validate(item) for item in payload]
        except ValidationError as e:
            raise DataIntegrityError(f"Malformed packet in stream {stream_id}: {e}") from e

    def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        try:
            return self.http.get(url, params=params)
        except httpx.HTTPError as e:
            logger.error("Request to %s failed: %s", url, e)
            raise TransportFailure(str(e) or "Backend unreachable") from e

    def _json(self, response: httpx.Response):
        if response.status_code >= 400:
            raise TransportFailure(f"HTTP {response.status_code}: {_error_detail(response)}")
        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure(f"Invalid JSON from backend: {e}") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)
