import base64
from datetime import datetime, timedelta, timezone

import dpkt
import pytest
from fastapi import FastAPI, File, UploadFile
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from falcon_client.api.schemas import AnalysisJob, Packet, Stream
from falcon_client.core.backend import BackendClient
from falcon_client.core.scheduler import TimerQueue

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Virtual monotonic clock; sleeping only moves time forward."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedBackend:
    """Stand-in for BackendClient that replays canned answers.

    Each script entry is either a dict (an analysis payload) or an exception
    instance to raise. The last entry repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call = None

    def get_analysis(self, job_id, filters=None):
        self.calls.append((job_id, filters))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                self.on_call(len(self.calls))
            entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
            if isinstance(entry, Exception):
                raise entry
            return AnalysisJob.model_validate({**entry, "id": job_id})
        finally:
            self.in_flight -= 1


def make_stream(stream_id, client, server, protocol="TCP", severity="normal", **extra):
    return Stream.model_validate(
        {
            "id": stream_id,
            "client_ip": client,
            "server_ip": server,
            "server_port": extra.pop("server_port", 443),
            "protocol": protocol,
            "severity": severity,
            **extra,
        }
    )


def make_packet(packet_id, source, offset_ms=0.0, flags="ACK", payload=b"", **extra):
    return Packet.model_validate(
        {
            "id": packet_id,
            "timestamp": (T0 + timedelta(milliseconds=offset_ms)).isoformat(),
            "src_ip": source,
            "flags": flags,
            "payload_len": len(payload),
            "payload": base64.b64encode(payload).decode() if payload else "",
            **extra,
        }
    )


@pytest.fixture
def scripted():
    return ScriptedBackend


@pytest.fixture
def stream_factory():
    return make_stream


@pytest.fixture
def packet_factory():
    return make_packet


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return TimerQueue(clock=clock, sleep=clock.sleep)


@pytest.fixture
def sample_streams():
    return [
        make_stream(
            "s-1",
            "10.0.0.5",
            "93.184.216.34",
            severity="critical",
            packet_count=42,
            retransmission_count=12,
            reset_count=1,
            has_timeout=True,
            issues=["Timeout Pattern: RST after 9.60s gap", "MATCH: Dillon's Symptoms (High Retrans + Timeout)"],
        ),
        make_stream(
            "s-2",
            "10.0.0.5",
            "151.101.1.69",
            protocol="TLS",
            severity="warning",
            packet_count=120,
            retransmission_count=8,
            issues=["High Retransmission Rate: 6.67%"],
        ),
        make_stream("s-3", "10.0.0.7", "93.184.216.34", protocol="HTTP", packet_count=10),
    ]


@pytest.fixture
def handshake_packets():
    client, server = "10.0.0.5", "93.184.216.34"
    return [
        make_packet(1, client, 0, "SYN"),
        make_packet(2, server, 35.5, "SYN,ACK"),
        make_packet(3, client, 36.0, "ACK"),
        make_packet(4, client, 40.0, "PSH,ACK", b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n"),
        make_packet(5, server, 9640.0, "RST"),
    ]


@pytest.fixture
def stub_backend():
    """FastAPI stand-in for the analysis backend with a mutable store."""
    app = FastAPI()
    state = {"jobs": {}, "packets": {}, "uploads": [], "requests": []}

    @app.post("/api/upload")
    async def upload(file: UploadFile = File(...)):
        state["uploads"].append((file.filename, await file.read()))
        return {"id": "job-1", "status": "processing"}

    @app.get("/api/analysis/{job_id}")
    async def analysis(job_id: str, src_ip: str = "", dst_ip: str = "", protocol: str = ""):
        state["requests"].append((job_id, {"src_ip": src_ip, "dst_ip": dst_ip, "protocol": protocol}))
        job = state["jobs"].get(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": "Analysis not found: record not found"})
        streams = [
            s
            for s in job.get("streams") or []
            if src_ip in s["client_ip"] and dst_ip in s["server_ip"] and protocol in s["protocol"]
        ]
        return {**job, "streams": streams}

    @app.get("/api/stream/{stream_id}/packets")
    async def packets(stream_id: str):
        return state["packets"].get(stream_id, [])

    return app, state


@pytest.fixture
def backend(stub_backend):
    app, _ = stub_backend
    return BackendClient(TestClient(app))


@pytest.fixture
def sample_pcap(tmp_path):
    """Write a two-packet TCP capture"""
    path = tmp_path / "handshake.pcap"
    with open(path, "wb") as f:
        writer = dpkt.pcap.Writer(f)

        ip = dpkt.ip.IP(src=b"\x0a\x00\x00\x05", dst=b"\x5d\xb8\xd8\x22", p=dpkt.ip.IP_PROTO_TCP)
        ip.data = dpkt.tcp.TCP(sport=51514, dport=443, seq=1, flags=dpkt.tcp.TH_SYN)
        eth = dpkt.ethernet.Ethernet(data=ip)
        writer.writepkt(eth, ts=1709294400.0)

        ip_ack = dpkt.ip.IP(src=b"\x5d\xb8\xd8\x22", dst=b"\x0a\x00\x00\x05", p=dpkt.ip.IP_PROTO_TCP)
        ip_ack.data = dpkt.tcp.TCP(sport=443, dport=51514, seq=1, ack=2, flags=dpkt.tcp.TH_SYN | dpkt.tcp.TH_ACK)
        writer.writepkt(dpkt.ethernet.Ethernet(data=ip_ack), ts=1709294400.0355)
    return path
