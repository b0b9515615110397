import logging
import os

import dpkt

from .errors import UploadError

logger = logging.getLogger(__name__)

CAPTURE_EXTENSIONS = (".pcap", ".pcapng", ".cap")

# Section Header Block type; pcapng files start with it whatever they are called.
PCAPNG_MAGIC = b"\x0a\x0d\x0d\x0a"


def load_pcap(file_path):
    """
    Open a capture file with the dpkt reader matching its header

    Args:
        file_path: Path to the .pcap/.pcapng/.cap file

    Returns:
        File object and dpkt reader
    """
    f = open(file_path, "rb")
    try:
        magic = f.read(4)
        f.seek(0)
        if magic == PCAPNG_MAGIC:
            pcap = dpkt.pcapng.Reader(f)
        else:
            pcap = dpkt.pcap.Reader(f)
    except Exception:
        f.close()
        raise
    return f, pcap


def validate_capture(file_path):
    """
    Check that a file looks like a capture the backend can analyze.

    Only the extension and the file header are checked; packets are parsed by
    the backend.

    Args:
        file_path: Path to the capture file

    Returns:
        Size of the file in bytes

    Raises:
        UploadError: if the file is missing, has the wrong extension or an
            unreadable header
    """
    file_path = os.fspath(file_path)
    if not file_path.lower().endswith(CAPTURE_EXTENSIONS):
        raise UploadError(
            f"Unsupported capture type for {os.path.basename(file_path)}; expected one of {', '.join(CAPTURE_EXTENSIONS)}"
        )
    if not os.path.isfile(file_path):
        raise UploadError(f"Capture file not found: {file_path}")

    try:
        f, _ = load_pcap(file_path)
    except (ValueError, dpkt.dpkt.NeedData, dpkt.dpkt.UnpackError) as e:
        raise UploadError(f"Not a readable capture file: {e}") from e
    f.close()

    size = os.path.getsize(file_path)
    logger.info("Validated capture %s (%d bytes)", file_path, size)
    return size
