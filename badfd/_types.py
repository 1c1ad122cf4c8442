from __future__ import annotations

import struct
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Protocol

TASK_COMM_LEN = 16
FILENAME_LEN = 256

# pid, ret, duration_ns, comm, fname (little-endian, no padding)
EVENT_STRUCT = struct.Struct("<IiQ16s256s")
EVENT_SIZE = EVENT_STRUCT.size


class PathRef(Protocol):
    """Reference to a not-yet-read path argument."""

    def read(self, max_len: int) -> bytes:
        ...


@dataclass(frozen=True)
class PendingRequest:
    start_ns: int
    path_ref: Optional[PathRef]


@dataclass(frozen=True)
class TaskInfo:
    pid: int
    comm: bytes


@dataclass
class AnomalyEvent:
    pid: int
    ret: int
    duration_ns: int
    comm: bytes
    fname: bytes

    def __str__(self):
        return f"{self.comm_str}[{self.pid}] open({self.fname_str!r}) = {self.ret} <{self.duration_ns}ns>"

    @property
    def comm_str(self) -> str:
        return _cstr(self.comm)

    @property
    def fname_str(self) -> str:
        return _cstr(self.fname)

    def pack_into(self, buf, offset: int = 0) -> None:
        EVENT_STRUCT.pack_into(buf, offset, self.pid, self.ret, self.duration_ns, self.comm, self.fname)

    def pack(self) -> bytes:
        return EVENT_STRUCT.pack(self.pid, self.ret, self.duration_ns, self.comm, self.fname)

    @classmethod
    def unpack(cls, raw: bytes) -> "AnomalyEvent":
        if len(raw) != EVENT_SIZE:
            raise ValueError(f"Expected {EVENT_SIZE} bytes, got {len(raw)}")
        pid, ret, duration_ns, comm, fname = EVENT_STRUCT.unpack(raw)
        return cls(pid=pid, ret=ret, duration_ns=duration_ns, comm=comm, fname=fname)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["comm"] = self.comm_str
        d["fname"] = self.fname_str
        d["kind"] = "AnomalyEvent"
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnomalyEvent":
        return cls(
            pid=d["pid"],
            ret=d["ret"],
            duration_ns=d["duration_ns"],
            comm=d["comm"].encode("utf-8", "surrogateescape"),
            fname=d["fname"].encode("utf-8", "surrogateescape"),
        )


def _cstr(raw: bytes) -> str:
    # comm is not guaranteed to be NUL-terminated; fname may be cut mid-character
    return raw.split(b"\x00", 1)[0].decode("utf-8", "replace")
