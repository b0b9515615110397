import logging
import os
import shutil
import tempfile
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from ..config import settings
from ..core import hexdump, ladder, report, topology
from ..core.backend import BackendClient
from ..core.errors import DataIntegrityError, TransientNotFound, TransportFailure, UploadError
from .schemas import AnalysisFilters, AnalysisJob, JobStatus, UploadResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_backend():
    backend = BackendClient.from_url(settings.BACKEND_URL, timeout=settings.REQUEST_TIMEOUT)
    try:
        yield backend
    finally:
        backend.close()


def _fetch_job(backend: BackendClient, analysis_id: str, filters: Optional[AnalysisFilters] = None) -> AnalysisJob:
    try:
        return backend.get_analysis(analysis_id, filters)
    except TransientNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransportFailure as e:
        raise HTTPException(status_code=502, detail=f"Backend unavailable: {e}")


def _fetch_packets(backend: BackendClient, stream_id: str):
    try:
        return backend.get_stream_packets(stream_id)
    except TransportFailure as e:
        raise HTTPException(status_code=502, detail=f"Backend unavailable: {e}")
    except DataIntegrityError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/")
async def root():
    return {
        "message": "Welcome to the Falcon Network Analyzer view service. Use POST /analyze to submit a capture."
    }


@router.post("/analyze", response_model=UploadResponse)
def analyze_capture(capture: UploadFile = File(...), backend: BackendClient = Depends(get_backend)):
    """
    Validate a capture and submit it to the analysis backend.

    - **capture**: The pcap/pcapng file to analyze
    """
    suffix = os.path.splitext(capture.filename or "")[1] or ".pcap"
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as temp_capture:
        temp_capture.write(capture.file.read())
        capture_path = temp_capture.name

    try:
        job_id = backend.upload(capture_path)
    except UploadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        os.unlink(capture_path)

    return UploadResponse(id=job_id)


@router.get("/analysis/{analysis_id}")
def get_analysis(
    analysis_id: str,
    src_ip: str = "",
    dst_ip: str = "",
    protocol: str = "",
    backend: BackendClient = Depends(get_backend),
):
    filters = AnalysisFilters(src_ip=src_ip, dst_ip=dst_ip, protocol=protocol)
    return _fetch_job(backend, analysis_id, filters).model_dump(mode="json")


@router.get("/analysis/{analysis_id}/topology")
def get_topology(
    analysis_id: str,
    columns: int = Query(topology.GRID_COLUMNS, ge=1),
    backend: BackendClient = Depends(get_backend),
):
    job = _fetch_job(backend, analysis_id)
    return topology.build(job.streams, columns=columns).to_dict()


@router.get("/stream/{stream_id}/ladder")
def get_ladder(
    stream_id: str,
    client: str,
    server: str,
    scale: float = 1.0,
    backend: BackendClient = Depends(get_backend),
):
    packets = _fetch_packets(backend, stream_id)
    try:
        rows = ladder.layout(packets, client, server, scale)
    except DataIntegrityError as e:
        logger.warning("Cannot lay out stream %s: %s", stream_id, e)
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "streamId": stream_id,
        "height": ladder.diagram_height(rows, scale),
        "clientRailX": ladder.CLIENT_RAIL_X,
        "serverRailX": ladder.SERVER_RAIL_X,
        "rows": [
            {
                "packetId": row.packet.id,
                "offset": row.offset,
                "isClientOriginated": row.is_client_originated,
                "deltaMs": row.delta_ms,
                "xStart": row.x_start,
                "xEnd": row.x_end,
                "label": row.label,
                "color": row.color,
                "anomaly": row.anomaly,
            }
            for row in rows
        ],
    }


@router.get("/stream/{stream_id}/packets/{packet_id}/hex")
def get_packet_hex(stream_id: str, packet_id: int, backend: BackendClient = Depends(get_backend)):
    packets = _fetch_packets(backend, stream_id)
    packet = next((p for p in packets if p.id == packet_id), None)
    if packet is None:
        raise HTTPException(status_code=404, detail=f"Packet {packet_id} not found in stream {stream_id}")

    result = hexdump.decode(packet.payload)
    if isinstance(result, hexdump.HexDump):
        return {
            "status": "ok",
            "rows": [{"offset": r.offset, "hex": list(r.hex_octets), "ascii": r.ascii} for r in result.rows],
            "formatted": hexdump.format_dump(result),
        }
    status = "empty" if isinstance(result, hexdump.NoPayload) else "error"
    return {"status": status, "rows": [], "message": result.message}


@router.get("/analysis/{analysis_id}/report")
def get_report(analysis_id: str, backend: BackendClient = Depends(get_backend)):
    job = _fetch_job(backend, analysis_id)
    if job.status != JobStatus.COMPLETE:
        raise HTTPException(status_code=409, detail=f"Analysis {analysis_id} is {job.status.value}")

    output_dir = tempfile.mkdtemp(prefix="falcon-report-")
    try:
        path = report.save_report(job, output_dir)
    except Exception:
        logger.exception("Report generation for %s failed", analysis_id)
        shutil.rmtree(output_dir, ignore_errors=True)
        raise
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=report.report_filename(analysis_id),
        background=BackgroundTask(_remove_report, path, output_dir),
    )


def _remove_report(path: str, directory: str) -> None:
    os.unlink(path)
    os.rmdir(directory)
