import json
import re
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Go encodes time.Time with up to nine fractional digits, datetime keeps six.
_FRACTION = re.compile(r"(\.\d{6})\d+")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class Severity(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class AnalysisSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_streams: int = 0
    issues_found: int = 0


class Stream(BaseModel):
    """One reconstructed conversation between a client and a server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    client_addr: str = Field(alias="client_ip")
    server_addr: str = Field(alias="server_ip")
    client_port: Optional[int] = None
    server_port: Optional[int] = None
    protocol: str = "TCP"
    severity: Severity = Severity.NORMAL
    packet_count: int = 0
    retransmission_count: int = 0
    reset_count: int = 0
    has_timeout: bool = False
    issues: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def flatten_wire_format(cls, data):
        """Accept both the stored and the domain shape of a stream.

        The stored shape keeps the findings in ``analysis_issues`` as a JSON
        encoded string; the domain shape uses an ``analysis`` list and nests
        counters under ``stats``.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        stats = data.pop("stats", None)
        if isinstance(stats, dict):
            for key in ("packet_count", "retransmission_count", "reset_count", "has_timeout"):
                if key in stats:
                    data.setdefault(key, stats[key])

        if "issues" not in data:
            if isinstance(data.get("analysis"), list):
                data["issues"] = data["analysis"]
            elif data.get("analysis_issues"):
                try:
                    issues = json.loads(data["analysis_issues"])
                except ValueError:
                    issues = [data["analysis_issues"]]
                data["issues"] = issues if isinstance(issues, list) else []
        if data.get("issues") is None:
            data["issues"] = []
        return data


class Packet(BaseModel):
    """A single packet of a stream as returned by the backend."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    timestamp: datetime
    source_addr: Optional[str] = Field(default=None, alias="src_ip")
    dest_addr: Optional[str] = Field(default=None, alias="dst_ip")
    seq: int = 0
    ack: int = 0
    flags: FrozenSet[str] = frozenset()
    payload_length: int = Field(default=0, alias="payload_len")
    window_size: int = 0
    payload: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def truncate_fraction(cls, value):
        if isinstance(value, str):
            return _FRACTION.sub(r"\1", value)
        return value

    @field_validator("flags", mode="before")
    @classmethod
    def split_flags(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(flag.strip().upper() for flag in value if flag and flag.strip())

    @property
    def flag_label(self) -> str:
        # Fixed TCP header order reads better than set order.
        order = ["SYN", "FIN", "RST", "PSH", "ACK", "URG", "ECE", "CWR"]
        known = [flag for flag in order if flag in self.flags]
        extra = sorted(self.flags.difference(order))
        return ",".join(known + extra)


class AnalysisJob(BaseModel):
    """Read-only snapshot of one backend analysis job."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus
    progress: int = Field(default=0, ge=0, le=100)
    summary: Optional[AnalysisSummary] = None
    error: Optional[str] = None
    streams: List[Stream] = Field(default_factory=list)

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, value):
        if value is None:
            return 0
        return max(0, min(100, int(value)))

    @field_validator("streams", mode="before")
    @classmethod
    def null_streams(cls, value):
        return value or []

    def streams_with_severity(self, severity: Severity) -> List[Stream]:
        return [stream for stream in self.streams if stream.severity == severity]


class UploadResponse(BaseModel):
    id: str


class AnalysisFilters(BaseModel):
    """Optional narrowing filters, sent as query parameters."""

    model_config = ConfigDict(frozen=True)

    src_ip: str = ""
    dst_ip: str = ""
    protocol: str = ""

    @property
    def active(self) -> bool:
        return bool(self.src_ip or self.dst_ip or self.protocol)

    def as_params(self) -> dict:
        return {key: value for key, value in self.model_dump().items() if value}
