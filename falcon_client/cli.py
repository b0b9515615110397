"""Command line entry point for the Falcon client."""

from __future__ import annotations

import argparse
import logging
from typing import List

from .api.schemas import AnalysisFilters, AnalysisJob, Severity
from .config import settings
from .core import hexdump, ladder, report
from .core.backend import BackendClient
from .core.errors import DataIntegrityError, FalconError, JobFailed, TransportFailure
from .core.poller import JobPoller, PollerSnapshot, PollerState
from .core.scheduler import TimerQueue

RESTART_HINT = "Start New Analysis: run 'falcon analyze <capture>' again."


def _filters(args: argparse.Namespace) -> AnalysisFilters:
    return AnalysisFilters(src_ip=args.src_ip or "", dst_ip=args.dst_ip or "", protocol=args.protocol or "")


def _print_progress(snapshot: PollerSnapshot) -> None:
    if snapshot.state == PollerState.POLLING:
        print(f"[{snapshot.job_id}] analyzing... {snapshot.progress}%")
    elif snapshot.state == PollerState.RETRYING_NOT_FOUND:
        print(f"[{snapshot.job_id}] waiting for the backend to register the job ({snapshot.not_found_attempts})")


def print_job(job: AnalysisJob) -> None:
    critical = job.streams_with_severity(Severity.CRITICAL)
    warning = job.streams_with_severity(Severity.WARNING)
    total = job.summary.total_streams if job.summary else len(job.streams)
    print(f"Analysis {job.id}: {total} streams, {len(critical)} critical, {len(warning)} warnings")
    if not critical and not warning:
        print("No significant issues detected.")
        return
    for stream in critical + warning:
        print(
            f"  {stream.severity.value.upper():<8} {stream.id}  {report.address_pair(stream)}  {stream.protocol}"
            f"  pkts={stream.packet_count} retrans={stream.retransmission_count} rst={stream.reset_count}"
        )
        for issue in stream.issues:
            print(f"      - {issue}")


def watch(backend: BackendClient, job_id: str, filters: AnalysisFilters, report_dir: str | None) -> int:
    poller = JobPoller(
        backend,
        TimerQueue(),
        poll_interval_ms=settings.POLL_INTERVAL_MS,
        not_found_retry_limit=settings.NOT_FOUND_RETRY_LIMIT,
        filter_debounce_ms=settings.FILTER_DEBOUNCE_MS,
    )
    poller.subscribe(_print_progress)
    scheduler = poller.scheduler
    try:
        # Filters pause polling while the job runs, so apply them once it is done.
        poller.start(job_id)
        scheduler.run_until_idle()
        if poller.state == PollerState.COMPLETE and filters.active:
            poller.set_filters(filters)
            scheduler.run_until_idle()
    except KeyboardInterrupt:
        poller.cancel()
        print("Cancelled.")
        return 130

    snapshot = poller.snapshot
    if snapshot.state != PollerState.COMPLETE:
        raise JobFailed(f"Analysis {job_id} failed: {snapshot.error or 'unknown error'}")

    print_job(snapshot.job)
    if report_dir:
        path = report.save_report(snapshot.job, report_dir)
        print(f"Report written to {path}")
    return 0


def inspect(backend: BackendClient, args: argparse.Namespace) -> int:
    try:
        packets = backend.get_stream_packets(args.stream_id)
        rows = ladder.layout(packets, args.client, args.server, args.scale)
    except (TransportFailure, DataIntegrityError) as e:
        print(f"Cannot inspect stream {args.stream_id}: {e}")
        return 1

    if not rows:
        print(f"Stream {args.stream_id} has no packets.")
        return 0
    print(ladder.render_text(rows, args.client, args.server))
    if args.hex:
        for packet in packets:
            print(f"\n#{packet.id} {packet.flag_label or 'DATA'} seq={packet.seq} ack={packet.ack} win={packet.window_size}")
            print(hexdump.format_dump(hexdump.decode(packet.payload)))
    return 0


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--src-ip", help="Only streams whose client address contains this text")
    parser.add_argument("--dst-ip", help="Only streams whose server address contains this text")
    parser.add_argument("--protocol", help="Only streams whose protocol contains this text")
    parser.add_argument(
        "--report",
        metavar="DIR",
        nargs="?",
        const=settings.REPORT_DIR,
        help="Write falcon-report-<id>.pdf into DIR (default: %(const)s)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="falcon", description="Falcon network capture analyzer client")
    parser.add_argument("--backend", default=settings.BACKEND_URL, help="Analysis backend base URL")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (default: %(default)s)")
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Upload a capture and wait for its analysis")
    analyze.add_argument("capture", help="Path to a .pcap, .pcapng or .cap file")
    _add_filter_arguments(analyze)

    watch_cmd = commands.add_parser("watch", help="Wait for an existing analysis job")
    watch_cmd.add_argument("job_id")
    _add_filter_arguments(watch_cmd)

    inspect_cmd = commands.add_parser("inspect", help="Show the ladder diagram of one stream")
    inspect_cmd.add_argument("stream_id")
    inspect_cmd.add_argument("--client", required=True, help="Client address of the stream")
    inspect_cmd.add_argument("--server", required=True, help="Server address of the stream")
    inspect_cmd.add_argument("--scale", type=float, default=1.0, help="Zoom factor between 0.5 and 2.0")
    inspect_cmd.add_argument("--hex", action="store_true", help="Also dump every packet payload")

    commands.add_parser("serve", help="Run the view service")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run("falcon_client.main:app", host=settings.HOST, port=settings.PORT)
        return 0

    with BackendClient.from_url(args.backend, timeout=settings.REQUEST_TIMEOUT) as backend:
        try:
            if args.command == "analyze":
                job_id = backend.upload(args.capture)
                print(f"Uploaded {args.capture} as analysis {job_id}")
                return watch(backend, job_id, _filters(args), args.report)
            if args.command == "watch":
                return watch(backend, args.job_id, _filters(args), args.report)
            return inspect(backend, args)
        except FalconError as e:
            print(f"Error: {e}")
            print(RESTART_HINT)
            return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
