"""Line-oriented JSON packets exchanged with the peripheral."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from .state import Decision

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\n"
ENCODING = "utf-8"
DEFAULT_RESULT = "deny"


def encode_packet(biometric_value: str) -> str:
    """Render the biometric token as a single-line JSON object."""
    return json.dumps({"biometric": biometric_value})


def encode_test_packet() -> str:
    return json.dumps({"test": "hello"})


def frame(payload: str) -> bytes:
    return (payload + LINE_TERMINATOR).encode(ENCODING)


def decode_line(line: Optional[str]) -> Decision:
    """
    Parse one peripheral line into a Decision.

    Blank input is the "no data" case. Anything that is not a JSON object is
    kept verbatim as the raw body and treated as a deny.
    """
    if line is None or not line.strip():
        return Decision(session_id=None, result=DEFAULT_RESULT, raw_json="")

    try:
        payload = json.loads(line)
    except (ValueError, RecursionError):
        logger.warning("Unparsable peripheral line: %.80r", line)
        return Decision(session_id=None, result=DEFAULT_RESULT, raw_json=line)

    if not isinstance(payload, dict):
        logger.warning("Peripheral line is not a JSON object: %r", line)
        return Decision(session_id=None, result=DEFAULT_RESULT, raw_json=line)

    result = payload.get("result")
    if not isinstance(result, str):
        result = DEFAULT_RESULT

    return Decision(
        session_id=_stringify(payload.get("session_id")),
        result=result,
        raw_json=json.dumps(payload, indent=2, ensure_ascii=False),
    )


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


__all__ = [
    "LINE_TERMINATOR",
    "ENCODING",
    "DEFAULT_RESULT",
    "encode_packet",
    "encode_test_packet",
    "frame",
    "decode_line",
]
