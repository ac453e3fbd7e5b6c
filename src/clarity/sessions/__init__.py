"""Agent session persistence, transport encoding and download links."""

from src.clarity.sessions.codec import (
    SessionCodecError,
    decode_session,
    encode_session,
    extract_session_file,
    restore_session_file,
    session_gzip_bytes,
    session_file_path,
)
from src.clarity.sessions.models import (
    DEFAULT_SESSION_TTL_DAYS,
    AgentSession,
    SessionStats,
    compute_expiry,
)
from src.clarity.sessions.repository import (
    InMemorySessionRepository,
    PostgresSessionRepository,
    SessionRepository,
)
from src.clarity.sessions.signed_url import (
    InvalidSignedTokenError,
    SignedToken,
    build_session_download_url,
    generate_signed_token,
    verify_signed_token,
)

__all__ = [
    "AgentSession",
    "DEFAULT_SESSION_TTL_DAYS",
    "InMemorySessionRepository",
    "InvalidSignedTokenError",
    "PostgresSessionRepository",
    "SessionCodecError",
    "SessionRepository",
    "SessionStats",
    "SignedToken",
    "build_session_download_url",
    "compute_expiry",
    "decode_session",
    "encode_session",
    "extract_session_file",
    "generate_signed_token",
    "restore_session_file",
    "session_gzip_bytes",
    "session_file_path",
    "verify_signed_token",
]
