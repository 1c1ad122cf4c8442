from __future__ import annotations

import errno
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, TextIO

import orjson

from ._types import AnomalyEvent

# the errors that matter most for file opens get a short human label
ERRNO_LABELS: Dict[int, str] = {
    errno.ENOENT: "No file",
    errno.EACCES: "Permission",
    errno.EPERM: "Op not permitted",
    errno.EEXIST: "File exists",
    errno.EMFILE: "Too many open files",
}

HEADER_FMT = "%-8s %-16s %-10s %-20s %s"


def fmt_result(ret: int) -> str:
    if ret >= 0:
        return "OK"
    code = -ret
    label = ERRNO_LABELS.get(code)
    if label is not None:
        return f"-{errno.errorcode[code]} ({label})"
    return f"ERR({code})"


def fmt_duration(ns: int) -> str:
    """Compact duration in the style of Go's time.Duration: 140ms, 1.5s, 812µs, 90ns."""
    if ns < 1_000:
        return f"{ns}ns"
    for unit, scale in (("h", 3600 * 10 ** 9), ("m", 60 * 10 ** 9), ("s", 10 ** 9), ("ms", 10 ** 6)):
        if ns >= scale:
            return _trim(ns / scale) + unit
    return _trim(ns / 1_000) + "µs"


def _trim(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def to_log_entry(event: AnomalyEvent, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "ts": (now or datetime.now().astimezone()).isoformat(timespec="seconds"),
        "pid": event.pid,
        "comm": event.comm_str,
        "lat_ns": event.duration_ns,
        "result": fmt_result(event.ret),
        "file": event.fname_str,
    }


class EventPrinter:
    """Writes drained events either as an aligned table or as JSON lines."""

    def __init__(self, stream: TextIO, json_mode: bool = False):
        self.stream = stream
        self.json_mode = json_mode
        self.printed = 0

    def header(self) -> None:
        if not self.json_mode:
            print(HEADER_FMT % ("PID", "COMM", "LATENCY", "RESULT", "FILE"), file=self.stream)

    def __call__(self, event: AnomalyEvent) -> None:
        if self.json_mode:
            line = orjson.dumps(to_log_entry(event)).decode("utf-8")
        else:
            line = HEADER_FMT % (
                event.pid,
                event.comm_str,
                fmt_duration(event.duration_ns),
                fmt_result(event.ret),
                event.fname_str,
            )
        print(line, file=self.stream, flush=True)
        self.printed += 1


class EventSerializer:
    @staticmethod
    def dumps(items: Iterable[AnomalyEvent], *, indent: bool = False) -> bytes:
        """
        Serialize events to JSON bytes.
        Set indent=True for pretty-printing (adds newlines and spaces).
        """
        payload = [obj.to_dict() for obj in items]
        options = 0
        if indent:
            options |= orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE | orjson.OPT_SORT_KEYS
        return orjson.dumps(payload, option=options)

    @staticmethod
    def dump(items: Iterable[AnomalyEvent], path: str, *, indent: bool = True) -> None:
        b = EventSerializer.dumps(items, indent=indent)
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
        with open(path, "wb") as f:
            f.write(b)

    @staticmethod
    def loads(data: bytes) -> List[AnomalyEvent]:
        return [EventSerializer._from_tagged(d) for d in orjson.loads(data)]

    @staticmethod
    def load(path: str) -> List[AnomalyEvent]:
        with open(path, "rb") as f:
            return EventSerializer.loads(f.read())

    @staticmethod
    def _from_tagged(d: Dict[str, Any]) -> AnomalyEvent:
        kind = d.get("kind")
        if kind == "AnomalyEvent":
            return AnomalyEvent.from_dict(d)
        raise ValueError(f"Unknown kind: {kind!r}")
