"""Paginated PDF report for a completed analysis.

:func:`compose` plans the pages from an :class:`AnalysisJob` without touching
reportlab, so pagination can be tested on its own; :func:`write_pdf` renders
a plan to a file.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from xml.sax.saxutils import escape

from reportlab.graphics import renderPDF
from reportlab.graphics.shapes import Drawing, Line, Rect, String
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Flowable, PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from ..api.schemas import AnalysisJob, JobStatus, Severity, Stream
from . import topology as topo

logger = logging.getLogger(__name__)

PAGE_SIZE = A4
MARGIN = 15 * mm
FRAME_PADDING = 6
CONTENT_WIDTH = PAGE_SIZE[0] - 2 * MARGIN - 2 * FRAME_PADDING
# One point of slack so a full-height slice always fits the frame.
CONTENT_HEIGHT = PAGE_SIZE[1] - 2 * MARGIN - 2 * FRAME_PADDING - 1

ISSUE_ROWS_PER_PAGE = 25
CRITICAL_DETAIL_LIMIT = 5
ISSUE_TEXT_LIMIT = 50
TOPOLOGY_PADDING = 20

ISSUE_HEADER = ["Address Pair", "Protocol", "Severity", "Packets", "Issues"]
CRITICAL_HEADER = ["Address Pair", "Protocol", "Retransmissions", "Timeout", "Issues"]


@dataclass(frozen=True)
class ContentSlice:
    """Window onto a tall content block, measured from its top edge."""

    offset: float
    height: float


@dataclass(frozen=True)
class ReportPage:
    kind: str
    heading: str = ""
    paragraphs: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    slice: Optional[ContentSlice] = None


@dataclass(frozen=True)
class Report:
    job_id: str
    generated_at: datetime
    pages: List[ReportPage]
    topology: Optional[topo.Topology] = None

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def filename(self) -> str:
        return report_filename(self.job_id)


def report_filename(job_id: str) -> str:
    return f"falcon-report-{job_id}.pdf"


def truncate(text: str, limit: int = ISSUE_TEXT_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def address_pair(stream: Stream) -> str:
    server = f"{stream.server_addr}:{stream.server_port}" if stream.server_port else stream.server_addr
    return f"{stream.client_addr} -> {server}"


def overall_status(job: AnalysisJob) -> str:
    if job.status == JobStatus.FAILED:
        return "FAILED"
    if job.streams_with_severity(Severity.CRITICAL):
        return "CRITICAL"
    if job.streams_with_severity(Severity.WARNING):
        return "WARNING"
    return "NORMAL"


def paginate(content_height: float, page_height: float = CONTENT_HEIGHT) -> List[ContentSlice]:
    """Split a content block into page-sized slices.

    Always returns ``ceil(content_height / page_height)`` slices; the last one
    holds the remainder.
    """
    if page_height <= 0:
        raise ValueError("page_height must be positive")
    count = math.ceil(content_height / page_height) if content_height > 0 else 0
    return [
        ContentSlice(offset=i * page_height, height=min(page_height, content_height - i * page_height))
        for i in range(count)
    ]


def topology_scale(graph: topo.Topology) -> float:
    width = graph.width + 2 * TOPOLOGY_PADDING
    return min(1.0, CONTENT_WIDTH / width) if width else 1.0


def topology_content_height(graph: topo.Topology) -> float:
    if not graph.nodes:
        return 0
    return (graph.height + 2 * TOPOLOGY_PADDING) * topology_scale(graph)


def compose(job: AnalysisJob, generated_at: Optional[datetime] = None, topology: Optional[topo.Topology] = None) -> Report:
    """Plan the report pages for ``job``."""
    generated_at = generated_at or datetime.now()
    critical = job.streams_with_severity(Severity.CRITICAL)
    warning = job.streams_with_severity(Severity.WARNING)
    summary = job.summary

    pages = [
        ReportPage(
            kind="title",
            heading=f"Network Analysis Report: {job.id}",
            paragraphs=[
                f"Analysis ID: {job.id}",
                f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
                f"Overall Status: {overall_status(job)}",
            ],
            rows=[
                ["Metric", "Value"],
                ["Total Streams", str(summary.total_streams if summary else len(job.streams))],
                ["Issues Found", str(summary.issues_found if summary else len(critical) + len(warning))],
                ["Critical Streams", str(len(critical))],
                ["Warning Streams", str(len(warning))],
                ["Job Status", job.status.value],
            ],
        )
    ]

    issue_rows = [
        [
            address_pair(stream),
            stream.protocol,
            stream.severity.value,
            str(stream.packet_count),
            truncate("; ".join(stream.issues)),
        ]
        for stream in critical + warning
    ]
    if not issue_rows:
        pages.append(ReportPage(kind="issues", heading="Detected Issues", paragraphs=["No significant issues detected."]))
    for start in range(0, len(issue_rows), ISSUE_ROWS_PER_PAGE):
        pages.append(
            ReportPage(
                kind="issues",
                heading="Detected Issues",
                rows=[ISSUE_HEADER] + issue_rows[start : start + ISSUE_ROWS_PER_PAGE],
            )
        )

    if critical:
        pages.append(
            ReportPage(
                kind="critical",
                heading="Critical Streams",
                rows=[CRITICAL_HEADER]
                + [
                    [
                        address_pair(stream),
                        stream.protocol,
                        str(stream.retransmission_count),
                        "yes" if stream.has_timeout else "no",
                        "; ".join(stream.issues),
                    ]
                    for stream in critical[:CRITICAL_DETAIL_LIMIT]
                ],
            )
        )

    if topology is not None:
        for content in paginate(topology_content_height(topology)):
            pages.append(ReportPage(kind="topology", slice=content))

    return Report(job_id=job.id, generated_at=generated_at, pages=pages, topology=topology)


def topology_drawing(graph: topo.Topology) -> Drawing:
    """Draw ``graph`` at natural size; the caller scales it."""
    width = graph.width + 2 * TOPOLOGY_PADDING
    height = graph.height + 2 * TOPOLOGY_PADDING
    drawing = Drawing(width, height)

    def centre(node):
        return (
            TOPOLOGY_PADDING + node.x + topo.NODE_WIDTH / 2,
            height - TOPOLOGY_PADDING - node.y - topo.NODE_HEIGHT / 2,
        )

    for edge in graph.edges:
        x1, y1 = centre(graph.node(edge.source))
        x2, y2 = centre(graph.node(edge.target))
        drawing.add(
            Line(x1, y1, x2, y2, strokeColor=colors.HexColor(edge.color), strokeWidth=edge.stroke_width)
        )
    for node in graph.nodes:
        x, y = centre(node)
        drawing.add(
            Rect(
                x - topo.NODE_WIDTH / 2,
                y - topo.NODE_HEIGHT / 2,
                topo.NODE_WIDTH,
                topo.NODE_HEIGHT,
                rx=6,
                ry=6,
                fillColor=colors.HexColor("#1e293b"),
                strokeColor=colors.HexColor("#475569"),
            )
        )
        drawing.add(String(x, y - 4, node.label, fontSize=10, fillColor=colors.white, textAnchor="middle"))
    return drawing


class DrawingSlice(Flowable):
    """Shows one page-sized window of a drawing scaled to the page width."""

    def __init__(self, drawing: Drawing, scale: float, content: ContentSlice):
        super().__init__()
        self.drawing = drawing
        self.scale = scale
        self.content = content

    def wrap(self, availWidth, availHeight):
        return min(self.drawing.width * self.scale, availWidth), self.content.height

    def draw(self):
        total = self.drawing.height * self.scale
        canv = self.canv
        canv.saveState()
        path = canv.beginPath()
        path.rect(0, 0, self.drawing.width * self.scale, self.content.height)
        canv.clipPath(path, stroke=0, fill=0)
        canv.translate(0, self.content.height + self.content.offset - total)
        canv.scale(self.scale, self.scale)
        renderPDF.draw(self.drawing, canv, 0, 0)
        canv.restoreState()


def _styles():
    styles = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "ReportTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=colors.HexColor("#282828"),
            spaceAfter=18,
            alignment=TA_CENTER,
        ),
        "heading": ParagraphStyle(
            "ReportHeading",
            parent=styles["Heading2"],
            fontSize=14,
            textColor=colors.HexColor("#2E86AB"),
            spaceAfter=12,
        ),
        "body": ParagraphStyle("ReportBody", parent=styles["Normal"], fontSize=10, leading=14, spaceAfter=6),
        "cell": ParagraphStyle("ReportCell", parent=styles["Normal"], fontSize=8, leading=10),
    }


def _table(rows: List[List[str]], styles, col_widths=None) -> Table:
    header, body = rows[0], rows[1:]
    data = [header] + [[Paragraph(escape(cell), styles["cell"]) for cell in row] for row in body]
    table = Table(data, colWidths=col_widths, repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2E86AB")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, 0), 9),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ]
        )
    )
    return table


def _page_flowables(page: ReportPage, report: Report, styles) -> list:
    if page.kind == "topology":
        graph = report.topology
        return [DrawingSlice(topology_drawing(graph), topology_scale(graph), page.slice)]

    flowables = []
    if page.heading:
        flowables.append(Paragraph(escape(page.heading), styles["title" if page.kind == "title" else "heading"]))
    for text in page.paragraphs:
        flowables.append(Paragraph(escape(text), styles["body"]))
    if page.rows:
        if page.paragraphs:
            flowables.append(Spacer(1, 6 * mm))
        if page.kind == "title":
            widths = [CONTENT_WIDTH / 2] * 2
        elif page.kind == "critical":
            widths = [f * CONTENT_WIDTH for f in (0.28, 0.1, 0.14, 0.1, 0.38)]
        else:
            widths = [f * CONTENT_WIDTH for f in (0.32, 0.1, 0.1, 0.1, 0.38)]
        flowables.append(_table(page.rows, styles, widths))
    return flowables


def write_pdf(report: Report, path) -> str:
    """Render ``report`` to ``path`` and return the path."""
    path = os.fspath(path)
    doc = SimpleDocTemplate(
        path,
        pagesize=PAGE_SIZE,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN,
        title=f"Network Analysis Report: {report.job_id}",
    )
    styles = _styles()
    story = []
    for index, page in enumerate(report.pages):
        if index:
            story.append(PageBreak())
        story.extend(_page_flowables(page, report, styles))
    doc.build(story)
    logger.info("Wrote %d page report to %s", report.page_count, path)
    return path


def save_report(job: AnalysisJob, directory=".", generated_at: Optional[datetime] = None, include_topology: bool = True) -> str:
    """Compose and write the report for ``job`` as ``falcon-report-<id>.pdf``."""
    graph = topo.build(job.streams) if include_topology and job.streams else None
    report = compose(job, generated_at=generated_at, topology=graph)
    os.makedirs(directory, exist_ok=True)
    return write_pdf(report, os.path.join(directory, report.filename))
