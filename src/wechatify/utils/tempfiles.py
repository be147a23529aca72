"""Temporary-file helpers shared by the acquirer and the compressor.

Every file the pipeline creates itself goes through :func:`create_temp_file`
and is later released with :func:`remove_temp_file`.  Names come from
:func:`tempfile.mkstemp`, so concurrent runs never collide.
"""

from __future__ import annotations

import os
import tempfile

from wechatify.observability import get_logger

log = get_logger("wechatify.tempfiles")

TEMP_PREFIX = "wechatify-"


def create_temp_file(suffix: str = "", directory: str | None = None) -> str:
    """Create an empty temp file and return its path.

    The OS-level descriptor is closed immediately; callers reopen the path.
    """
    fd, path = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=suffix, dir=directory)
    os.close(fd)
    return path


def remove_temp_file(path: str) -> None:
    """Delete *path* if it still exists.

    Failures are logged rather than raised: release runs on error paths and
    must not replace the error that is already propagating.
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        log.warning(
            "Failed to remove temp file",
            extra={"extra_fields": {"op": "cleanup", "path": path, "error": str(exc)}},
        )
        return
    log.debug(
        "Removed temp file",
        extra={"extra_fields": {"op": "cleanup", "path": path}},
    )
