"""
Application-wide constants and configuration keys.

This module centralizes all magic strings and numbers used throughout the application
to improve maintainability and reduce duplication.
"""
from enum import Enum


class StreamPlatform(str, Enum):
    """
    Known streaming destinations.

    Named platforms resolve a bare stream key into a full ingest URL;
    CUSTOM takes a complete rtmp:// or rtmps:// URL from the operator.
    """

    YOUTUBE = 'youtube'
    FACEBOOK = 'facebook'
    TWITCH = 'twitch'
    CUSTOM = 'custom'

    def ingest_base(self) -> str | None:
        """Get the ingest URL prefix for a named platform (None for CUSTOM)"""
        bases = {
            'youtube': "rtmp://a.rtmp.youtube.com/live2",
            'facebook': "rtmps://live-api-s.facebook.com:443/rtmp",
            'twitch': "rtmp://live.twitch.tv/app",
        }
        return bases.get(self.value)


class ServerConfig:
    """Server configuration constants"""

    HOST = "0.0.0.0"
    PORT = 5000


class SettingKeys:
    """Database setting keys used throughout the application"""

    # Scheduler
    SCHEDULER_POLL_INTERVAL = "scheduler_poll_interval"
    DISPATCH_CONCURRENCY = "dispatch_concurrency"

    # Health watch
    HEALTH_CHECK_INTERVAL = "health_check_interval"

    # Network Configuration
    SERVER_HOST = "server_host"


class EncodingDefaults:
    """
    Fixed, reviewed encoding parameters for every stream.

    These are deliberately not operator-configurable: changing them means
    changing this file and going through review.
    """

    VIDEO_CODEC = "libx264"
    PRESET = "veryfast"
    MAX_RATE = "3000k"
    BUFFER_SIZE = "6000k"
    PIXEL_FORMAT = "yuv420p"
    GOP_SIZE = 50  # keyframe every 50 frames (2s at 25fps)
    AUDIO_CODEC = "aac"
    AUDIO_BITRATE = "160k"
    AUDIO_CHANNELS = 2
    AUDIO_SAMPLE_RATE = 44100
    OUTPUT_FORMAT = "flv"


class SupervisorConfig:
    """Process supervision configuration constants"""

    UNIT_PREFIX = "stream"
    CONTROL_TIMEOUT_SECONDS = 15.0  # Upper bound for a single systemctl/psutil call
    START_TIMEOUT_SECONDS = 10.0  # How long a started process has to report running
    START_POLL_INTERVAL_SECONDS = 0.5
    STOP_GRACE_SECONDS = 10.0  # SIGTERM -> SIGKILL grace for the local backend
    MAX_WORKERS = 8  # Bounded pool for blocking facility calls


class SchedulerConfig:
    """Schedule engine configuration constants"""

    MAX_POLL_INTERVAL_SECONDS = 30.0  # Upper bound on sleep between ticks
    MIN_SLEEP_SECONDS = 0.05
    DISPATCH_CONCURRENCY = 4  # Independent firings dispatched in parallel
    HEALTH_CHECK_INTERVAL_SECONDS = 15.0
    DISPATCH_DRAIN_SECONDS = 30.0  # How long stop() lets in-flight dispatches finish


class PersistenceConfig:
    """Retry policy for transient storage errors"""

    MAX_ATTEMPTS = 3
    INITIAL_BACKOFF_SECONDS = 0.1
    BACKOFF_MULTIPLIER = 2.0


class HTTPStatus:
    """HTTP status codes used throughout the application"""

    # Success
    OK = 200
    CREATED = 201
    NO_CONTENT = 204

    # Client Errors
    BAD_REQUEST = 400
    NOT_FOUND = 404
    CONFLICT = 409

    # Server Errors
    INTERNAL_SERVER_ERROR = 500
    BAD_GATEWAY = 502
    SERVICE_UNAVAILABLE = 503
