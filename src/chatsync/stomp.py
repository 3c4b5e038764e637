"""
Minimal STOMP 1.2 framing for the push transport.

Only what the chat push channel uses: ``CONNECT``/``CONNECTED``,
``SUBSCRIBE``/``UNSUBSCRIBE``, ``MESSAGE`` and ``ERROR``.  Frames are
text (the server never sends binary bodies) and end with a NUL octet.
A bare newline on the wire is a heart-beat.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

NUL = "\x00"

_ESCAPES = (("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c"))


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append({"\\": "\\", "r": "\r", "n": "\n", "c": ":"}.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


@dataclass
class StompFrame:
    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""


def encode_frame(
    command: str,
    headers: Optional[Mapping[str, str]] = None,
    body: str = "",
) -> str:
    """Serialise a frame, NUL-terminated."""
    lines = [command]
    for key, value in (headers or {}).items():
        lines.append(f"{_escape(str(key))}:{_escape(str(value))}")
    return "\n".join(lines) + "\n\n" + body + NUL


def is_heartbeat(data: str) -> bool:
    return data.strip("\r\n") == ""


def parse_frame(data: str) -> StompFrame:
    """Parse one frame.

    Repeated headers keep their first value, as STOMP 1.2 requires.

    Raises:
        ValueError: If *data* has no command line.
    """
    data = data.lstrip("\r\n")
    if data.endswith(NUL):
        data = data[:-1]
    head, sep, body = data.partition("\n\n")
    if not sep:
        head, sep, body = data.partition("\r\n\r\n")
    lines = head.replace("\r\n", "\n").split("\n")
    command = lines[0].strip()
    if not command:
        raise ValueError("STOMP frame has no command")

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        key, colon, value = line.partition(":")
        if not colon:
            continue
        key = _unescape(key)
        if key not in headers:
            headers[key] = _unescape(value)

    return StompFrame(command=command, headers=headers, body=body)
