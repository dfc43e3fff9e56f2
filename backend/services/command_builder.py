"""
Encoding command builder and session input validation.

Builds the ffmpeg argv for a session from fixed encoding parameters and
validates everything that ends up on that command line. Also owns the
session id <-> process instance name mapping.
"""
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from constants import EncodingDefaults, StreamPlatform
from exceptions import ConfigurationError

LOOP_PREFIX = "loop:"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s")
_STREAM_KEY = re.compile(r"^[A-Za-z0-9_.\-?=&]+$")
_KEPT = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.:")
_ESCAPE_SEQUENCE = re.compile(r"\\x([0-9a-f]{2})")


# ---------------------------------------------------------------------------
# Instance naming
# ---------------------------------------------------------------------------

def escape_instance_name(session_id: str) -> str:
    """
    Escape a session id the way systemd-escape does.

    Characters in [A-Za-z0-9_.:] are kept, every other byte of the UTF-8
    encoding becomes \\xNN, and a leading '.' is escaped too. The result is
    always a valid unit-name fragment and decodes back to the same id.
    """
    out = []
    for index, char in enumerate(session_id):
        if char in _KEPT and not (index == 0 and char == "."):
            out.append(char)
        else:
            out.extend(f"\\x{byte:02x}" for byte in char.encode("utf-8"))
    return "".join(out)


def unescape_instance_name(escaped: str) -> str:
    """Inverse of escape_instance_name"""
    raw = bytearray()
    pos = 0
    for match in _ESCAPE_SEQUENCE.finditer(escaped):
        raw.extend(escaped[pos:match.start()].encode("utf-8"))
        raw.append(int(match.group(1), 16))
        pos = match.end()
    raw.extend(escaped[pos:].encode("utf-8"))
    return raw.decode("utf-8")


def instance_name_for(prefix: str, session_id: str) -> str:
    return f"{prefix}-{escape_instance_name(session_id)}"


def session_id_from_instance(prefix: str, instance_name: str) -> Optional[str]:
    """
    Decode the session id from an instance name.

    Accepts the name with or without a trailing '.service'. Returns None
    for names that do not follow the naming convention.
    """
    name = instance_name[:-len(".service")] if instance_name.endswith(".service") else instance_name
    head = f"{prefix}-"
    if not name.startswith(head) or len(name) == len(head):
        return None
    escaped = name[len(head):]
    try:
        session_id = unescape_instance_name(escaped)
    except UnicodeDecodeError:
        return None
    # Only canonical encodings belong to us
    if escape_instance_name(session_id) != escaped:
        return None
    return session_id


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def split_source(source: str) -> Tuple[str, bool]:
    """Split 'loop:<path>' into (path, True); plain paths give (path, False)"""
    if source.startswith(LOOP_PREFIX):
        return source[len(LOOP_PREFIX):], True
    return source, False


def resolve_source(source: str, media_root: Path, session_id: Optional[str] = None) -> Tuple[Path, bool]:
    """
    Validate a session source and resolve it to a file under the media root.

    Args:
        source: Media path (absolute, or relative to media_root), optionally prefixed with 'loop:'
        media_root: Directory every source must live in
        session_id: Included in error details when known

    Returns:
        (resolved path, loop forever)

    Raises:
        ConfigurationError: If the path is malformed, outside the media root, or missing
    """
    raw_path, loop = split_source(source)
    if not raw_path or not raw_path.strip():
        raise ConfigurationError("Source path is empty", field="source", session_id=session_id)
    if _CONTROL_CHARS.search(raw_path):
        raise ConfigurationError("Source path contains control characters", field="source", session_id=session_id)
    if raw_path.startswith("-"):
        raise ConfigurationError("Source path must not start with '-'", field="source", session_id=session_id)

    root = media_root.resolve()
    candidate = Path(raw_path)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()

    if not resolved.is_relative_to(root):
        raise ConfigurationError(f"Source must be inside the media directory {root}", field="source", session_id=session_id)
    if not resolved.is_file():
        raise ConfigurationError(f"Source file not found: {raw_path}", field="source", session_id=session_id)

    return resolved, loop


def validate_stream_key(stream_key: str) -> str:
    if not stream_key or not _STREAM_KEY.match(stream_key):
        raise ConfigurationError(
            "Stream key may only contain letters, digits and _ . - ? = &",
            field="stream_key",
        )
    return stream_key


def validate_destination(destination: str, session_id: Optional[str] = None) -> str:
    """
    Check that a destination is an rtmp:// or rtmps:// URL with a host.

    Raises:
        ConfigurationError: If the URL is malformed or carries whitespace/control characters
    """
    if not destination:
        raise ConfigurationError("Destination is empty", field="destination", session_id=session_id)
    if _CONTROL_CHARS.search(destination) or _WHITESPACE.search(destination):
        raise ConfigurationError("Destination contains whitespace or control characters", field="destination", session_id=session_id)

    parsed = urlparse(destination)
    if parsed.scheme not in ("rtmp", "rtmps"):
        raise ConfigurationError("Destination must be an rtmp:// or rtmps:// URL", field="destination", session_id=session_id)
    if not parsed.hostname:
        raise ConfigurationError("Destination URL has no host", field="destination", session_id=session_id)
    return destination


def resolve_destination(platform: StreamPlatform, stream_key: Optional[str] = None,
                        custom_url: Optional[str] = None) -> str:
    """
    Build the full ingest URL for a platform.

    Known platforms combine their ingest base with the stream key. The
    custom platform takes a complete URL, optionally with a key appended.
    """
    if platform == StreamPlatform.CUSTOM:
        if not custom_url:
            raise ConfigurationError("Custom platform requires a destination URL", field="destination")
        url = custom_url.rstrip("/")
        if stream_key:
            url = f"{url}/{validate_stream_key(stream_key)}"
        return validate_destination(url)

    if not stream_key:
        raise ConfigurationError(f"{platform.value} requires a stream key", field="stream_key")
    return validate_destination(f"{platform.ingest_base()}/{validate_stream_key(stream_key)}")


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncodingCommand:
    """A fully validated command line, ready for the process-control facility"""
    argv: List[str]
    source: Path
    destination: str
    loop: bool


def build_command(ffmpeg_path: str, source: str, destination: str, media_root: Path,
                  session_id: Optional[str] = None) -> EncodingCommand:
    """
    Validate inputs and build the ffmpeg argv.

    The argv is handed to the facility as a list; nothing is ever passed
    through a shell.
    """
    path, loop = resolve_source(source, media_root, session_id)
    url = validate_destination(destination, session_id)

    argv = [ffmpeg_path, "-re"]
    if loop:
        argv += ["-stream_loop", "-1"]
    argv += [
        "-i", str(path),
        "-c:v", EncodingDefaults.VIDEO_CODEC,
        "-preset", EncodingDefaults.PRESET,
        "-maxrate", EncodingDefaults.MAX_RATE,
        "-bufsize", EncodingDefaults.BUFFER_SIZE,
        "-pix_fmt", EncodingDefaults.PIXEL_FORMAT,
        "-g", str(EncodingDefaults.GOP_SIZE),
        "-c:a", EncodingDefaults.AUDIO_CODEC,
        "-b:a", EncodingDefaults.AUDIO_BITRATE,
        "-ac", str(EncodingDefaults.AUDIO_CHANNELS),
        "-ar", str(EncodingDefaults.AUDIO_SAMPLE_RATE),
        "-f", EncodingDefaults.OUTPUT_FORMAT,
        url,
    ]
    return EncodingCommand(argv=argv, source=path, destination=url, loop=loop)
