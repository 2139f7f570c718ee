"""
Failure reasons for the video slot.

Publish failures are persisted on the property's video slot and shown to API
clients, so raw ffmpeg/storage output is reduced to a user-facing message
while the original is logged for debugging.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Text that gives away paths, tracebacks or driver internals
INTERNAL_PATTERNS = [
    r'/home/\w+/',
    r'/tmp/\w+',
    r'/var/\w+/',
    r'line \d+',
    r'File "[^"]+\.py"',
    r'ffmpeg:.*\.mp4',
    r'ffprobe:.*\.mp4',
    r'Permission denied',
    r'No such file or directory',
    r'UNIQUE constraint failed',
    r'sqlite3?\.',
    r'botocore',
    r'An error occurred \(\w+\)',  # botocore ClientError text
]

ERROR_MESSAGES = {
    "transcode_failed": "Video processing failed. Please try uploading again.",
    "convert_failed": "The video format could not be converted. Please upload an MP4 file.",
    "ffprobe": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "timeout": "Video processing timed out. Please try again with a shorter video.",
    "duration": "Could not determine video duration. The file may be corrupted.",
    "thumbnail": "Could not generate a preview image for the video.",
    "source_not_found": "Source file not found. Please re-upload the video.",
    "storage": "Uploading the processed video failed. Please try again.",
    "interrupted": "Video processing was interrupted; please re-upload.",
    "general": "An error occurred while processing your video. Please try again.",
}

# First match wins, so the more specific pipeline steps come before the
# generic ffmpeg and storage keywords.
_KEYWORD_RULES = (
    (("timeout", "timed out"), "timeout"),
    (("interrupted",), "interrupted"),
    (("convert", "conversion", "remux"), "convert_failed"),
    (("thumbnail",), "thumbnail"),
    (("ffprobe", "probe"), "ffprobe"),
    (("duration",), "duration"),
    (("ffmpeg", "transcode", "encode"), "transcode_failed"),
    (("source file", "not found"), "source_not_found"),
    (("object store", "upload", "bucket"), "storage"),
)

# Anything shorter than this without a path separator is shown verbatim
SAFE_MESSAGE_MAX_LENGTH = 100


def truncate_error(message: Optional[str], max_length: int) -> Optional[str]:
    """Truncate an error message to max_length characters, marking the cut."""
    if message is None:
        return None
    message = message.strip()
    if len(message) <= max_length:
        return message
    suffix = "... (truncated)"
    if max_length <= len(suffix):
        return message[:max_length]
    return message[: max_length - len(suffix)] + suffix


def _classify(error: str) -> Optional[str]:
    lowered = error.lower()
    for keywords, message_key in _KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return message_key
    if any(re.search(pattern, error, re.IGNORECASE) for pattern in INTERNAL_PATTERNS):
        return "general"
    return None


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Map a raw pipeline error onto a message that is safe to store and return.

    Args:
        error: The raw failure text from the publish job
        log_original: Log the raw text at WARNING before it is replaced
        context: Appended to the log line, e.g. "property_id=abc video_id=3"

    Returns:
        One of ERROR_MESSAGES, the input itself when it is short and free of
        paths, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        where = f" ({context})" if context else ""
        logger.warning(f"Original error{where}: {error}")

    message_key = _classify(error)
    if message_key is not None:
        return ERROR_MESSAGES[message_key]

    if len(error) < SAFE_MESSAGE_MAX_LENGTH and "/" not in error and "\\" not in error:
        return error
    return ERROR_MESSAGES["general"]
