"""Session blob encoding and session-file transfer.

The blob stored for a session is the agent's ``<session_id>.jsonl``
file, gzip-compressed and base64-encoded.
"""

import base64
import binascii
import gzip
import logging
import zlib
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SESSION_FILE_SUFFIX = ".jsonl"


class SessionCodecError(Exception):
    """Raised when a session blob cannot be decoded."""


def encode_session(content: bytes) -> str:
    return base64.b64encode(gzip.compress(content)).decode("ascii")


def decode_session(blob: str) -> bytes:
    """Decode a stored session blob back to the raw session file.

    Raises:
        SessionCodecError: If the blob is not base64 gzip data.
    """
    try:
        return gzip.decompress(base64.b64decode(blob, validate=True))
    except (binascii.Error, OSError, EOFError, zlib.error) as exc:
        raise SessionCodecError(f"Invalid session blob: {exc}") from exc


def session_gzip_bytes(blob: str) -> bytes:
    """The compressed session file carried by a blob, without inflating it."""
    try:
        return base64.b64decode(blob, validate=True)
    except binascii.Error as exc:
        raise SessionCodecError(f"Invalid session blob: {exc}") from exc


def session_file_path(session_dir: Path, session_id: str) -> Path:
    return session_dir / f"{session_id}{SESSION_FILE_SUFFIX}"


def restore_session_file(session_id: str, blob: str, session_dir: Path) -> bool:
    """Write a stored session back to disk so the agent can resume it.

    Returns:
        True on success. Failures are logged and reported as False so
        the turn can continue as a fresh conversation.
    """
    target = session_file_path(session_dir, session_id)
    try:
        content = decode_session(blob)
        session_dir.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    except (SessionCodecError, OSError) as exc:
        logger.warning(
            "Failed to restore session file",
            extra={"session_id": session_id, "error": str(exc)},
        )
        return False

    logger.info(
        "Session file restored",
        extra={
            "session_id": session_id,
            "compressed_bytes": len(blob),
            "uncompressed_bytes": len(content),
        },
    )
    return True


def extract_session_file(session_id: str, session_dir: Path) -> Optional[str]:
    """Read an agent session file and encode it for storage.

    Returns:
        The encoded blob, or None if the file is missing or unreadable.
    """
    source = session_file_path(session_dir, session_id)
    try:
        content = source.read_bytes()
    except OSError as exc:
        logger.warning(
            "Session file not available for extraction",
            extra={"session_id": session_id, "path": str(source), "error": str(exc)},
        )
        return None

    blob = encode_session(content)
    logger.info(
        "Session blob extracted",
        extra={
            "session_id": session_id,
            "uncompressed_bytes": len(content),
            "compressed_bytes": len(blob),
        },
    )
    return blob
