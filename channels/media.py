"""
Media normalization and validation.

Outbound media may arrive as a file path, raw bytes, or an already-built
MediaPayload. Everything is converted to a MediaPayload before it is
validated, queued, or handed to the transport.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union

from channels.base import MediaValidationError
from config.settings import MediaConfig
from models.schemas import MediaPayload

MediaContent = Union[str, os.PathLike, bytes, bytearray, memoryview, MediaPayload]


def normalize_media(
    content: Any,
    mimetype: Optional[str] = None,
    filename: Optional[str] = None,
) -> MediaPayload:
    """Convert any accepted media input into a MediaPayload."""
    if isinstance(content, MediaPayload):
        return content

    if isinstance(content, (bytes, bytearray, memoryview)):
        return MediaPayload.from_bytes(bytes(content), mimetype=mimetype, filename=filename)

    if isinstance(content, (str, os.PathLike)):
        path = Path(content)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise MediaValidationError(f"unreadable file {path}: {e}") from e
        name = filename or path.name
        return MediaPayload(
            mimetype=mimetype or MediaPayload.guess_mimetype(name),
            data=data,
            filename=name,
        )

    raise MediaValidationError(f"unsupported media content type {type(content).__name__}")


def validate_media(media: MediaPayload, config: MediaConfig) -> None:
    """Raise MediaValidationError if the format or size is not allowed."""
    extension = media.extension
    if extension not in config.supported_formats:
        raise MediaValidationError(
            f"unsupported format '{extension or media.mimetype}' "
            f"(allowed: {', '.join(config.supported_formats)})"
        )
    if media.size > config.max_file_size:
        raise MediaValidationError(
            f"size {media.size} bytes exceeds limit of {config.max_file_size} bytes"
        )
