"""Host topology graph built from the streams of one analysis."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..api.schemas import Severity, Stream

GRID_COLUMNS = 5
CELL_WIDTH = 200
CELL_HEIGHT = 150
NODE_WIDTH = 150
NODE_HEIGHT = 40

CRITICAL_COLOR = "#ef4444"
EDGE_COLOR = "#64748b"


@dataclass(frozen=True)
class TopologyNode:
    addr: str
    x: float
    y: float

    @property
    def label(self) -> str:
        return self.addr


@dataclass(frozen=True)
class TopologyEdge:
    stream_id: str
    source: str
    target: str
    protocol: str
    critical: bool

    @property
    def id(self) -> str:
        return self.stream_id

    @property
    def color(self) -> str:
        return CRITICAL_COLOR if self.critical else EDGE_COLOR

    @property
    def stroke_width(self) -> int:
        return 2 if self.critical else 1

    @property
    def animated(self) -> bool:
        return self.critical


@dataclass(frozen=True)
class Topology:
    nodes: List[TopologyNode] = field(default_factory=list)
    edges: List[TopologyEdge] = field(default_factory=list)
    columns: int = GRID_COLUMNS

    def node(self, addr: str) -> Optional[TopologyNode]:
        for node in self.nodes:
            if node.addr == addr:
                return node
        return None

    def stream_for_edge(self, edge_id: str) -> Optional[str]:
        """Stream id behind a clicked edge, for drill-down."""
        for edge in self.edges:
            if edge.id == edge_id:
                return edge.stream_id
        return None

    @property
    def width(self) -> float:
        used = min(len(self.nodes), self.columns)
        return (used - 1) * CELL_WIDTH + NODE_WIDTH if used else 0

    @property
    def height(self) -> float:
        rows = -(-len(self.nodes) // self.columns)
        return (rows - 1) * CELL_HEIGHT + NODE_HEIGHT if rows else 0

    def to_dict(self) -> dict:
        return {
            "nodes": [{"id": n.addr, "label": n.label, "x": n.x, "y": n.y} for n in self.nodes],
            "edges": [
                {
                    "id": e.id,
                    "streamId": e.stream_id,
                    "source": e.source,
                    "target": e.target,
                    "label": e.protocol,
                    "critical": e.critical,
                    "animated": e.animated,
                    "color": e.color,
                    "strokeWidth": e.stroke_width,
                }
                for e in self.edges
            ],
        }


def build(streams: Iterable[Stream], columns: int = GRID_COLUMNS) -> Topology:
    """Collapse ``streams`` into one node per address and one edge per stream.

    Nodes are placed on a fixed grid in first-seen order, so the same input
    always yields the same picture.
    """
    if columns < 1:
        raise ValueError("columns must be at least 1")

    streams = list(streams)
    positions: Dict[str, int] = {}
    for stream in streams:
        for addr in (stream.client_addr, stream.server_addr):
            positions.setdefault(addr, len(positions))

    nodes = [
        TopologyNode(addr=addr, x=(index % columns) * CELL_WIDTH, y=(index // columns) * CELL_HEIGHT)
        for addr, index in positions.items()
    ]
    edges = [
        TopologyEdge(
            stream_id=stream.id,
            source=stream.client_addr,
            target=stream.server_addr,
            protocol=stream.protocol,
            critical=stream.severity == Severity.CRITICAL,
        )
        for stream in streams
    ]
    return Topology(nodes=nodes, edges=edges, columns=columns)
