"""Logging and telemetry for the Mystara gateway.

Emits one structured log record per processed or rejected request to stdout
and, optionally, to an append-only log file. Records carry a process-local
sequence number so they can be ordered even when timestamps collide.
"""

import itertools
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")

_sequence = itertools.count(1)


def setup_logging(log_file: Optional[str] = None) -> None:
    """Configure the gateway logger with stdout and optional file handlers.

    Args:
        log_file: Path to the append-only log file, or None for stdout only.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        if log_file:
            log_path = Path(log_file)
            os.makedirs(log_path.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(stdout_fmt)
            logger.addHandler(file_handler)


def next_sequence() -> int:
    """Return the next process-local request sequence number."""
    return next(_sequence)


def log_request(
    *,
    caller_id: Optional[str],
    message_length: int,
    tier: Optional[str],
    outcome: str,
    mode: str,
    remaining: Optional[int] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Log a single request event as a JSON line and return the record.

    Args:
        caller_id: The caller's identifier (None if it was missing).
        message_length: Length of the user message in characters.
        tier: Quota tier name (None if validation failed first).
        outcome: Short outcome label (e.g. "success", "rate_limited").
        mode: Response mode, "buffered" or "streaming".
        remaining: Remaining quota after this request, if known.
        error: Server-side error detail, never shown to the caller.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "seq": next_sequence(),
        "caller_id": caller_id,
        "message_length": message_length,
        "tier": tier,
        "mode": mode,
        "outcome": outcome,
    }

    if remaining is not None:
        record["remaining"] = remaining

    if error:
        record["error"] = error

    if outcome in ("configuration_error", "upstream_error"):
        logger.error(json.dumps(record, ensure_ascii=False))
    else:
        logger.info(json.dumps(record, ensure_ascii=False))
    return record
