"""Best-effort reads of another task's state through /proc."""

from __future__ import annotations

import os
from typing import Optional

from ._types import FILENAME_LEN, TASK_COMM_LEN, TaskInfo

PAGE_SIZE = 4096


class ProcMemoryRef:
    """
    Deferred reference to a NUL-terminated string in another process's memory.

    Extension point for hook sources that hand over only a user-space pointer
    (a kprobe or uprobe argument, say). The strace source already has the path
    text and uses `StracePathRef` instead.

    `read()` copies at most `max_len` bytes from /proc/<pid>/mem, one page at a time
    so an unmapped page past the string doesn't fail the whole read. A partial read
    returns the bytes obtained so far; only a read that yields nothing raises.
    """

    __slots__ = ("pid", "addr")

    def __init__(self, pid: int, addr: int):
        self.pid = pid
        self.addr = addr

    def read(self, max_len: int = FILENAME_LEN) -> bytes:
        out = bytearray()
        addr = self.addr
        with open(f"/proc/{self.pid}/mem", "rb", buffering=0) as mem:
            while len(out) < max_len:
                chunk_len = min(PAGE_SIZE - (addr % PAGE_SIZE), max_len - len(out))
                try:
                    mem.seek(addr)
                    chunk = mem.read(chunk_len)
                except OSError:
                    if not out:
                        raise
                    break
                if not chunk:
                    break
                nul = chunk.find(b"\x00")
                if nul >= 0:
                    out += chunk[:nul]
                    break
                out += chunk
                addr += len(chunk)
        return bytes(out)

    def __repr__(self):
        return f"ProcMemoryRef(pid={self.pid}, addr={self.addr:#x})"


def read_comm(tid: int) -> bytes:
    try:
        with open(f"/proc/{tid}/comm", "rb") as f:
            return f.read(TASK_COMM_LEN).rstrip(b"\n")
    except OSError:
        return b""


def read_tgid(tid: int) -> Optional[int]:
    try:
        with open(f"/proc/{tid}/status", "r") as fh:
            for line in fh:
                if line.startswith("Tgid:"):
                    return int(line.split(":")[1].strip())
    except (OSError, ValueError):
        pass
    return None


def proc_task_lookup(tid: int) -> TaskInfo:
    """Resolve the process id and name of a thread. Falls back to the tid and an empty name."""
    tgid = read_tgid(tid)
    return TaskInfo(pid=tgid if tgid is not None else tid, comm=read_comm(tid))


def is_ptrace_allowed(ptrace_scope_path: str = "/proc/sys/kernel/yama/ptrace_scope") -> Optional[bool]:
    """True if Yama allows attaching to arbitrary same-uid processes, None if Yama is absent."""
    if not os.path.exists(ptrace_scope_path):
        return None
    with open(ptrace_scope_path, "r") as f:
        return f.read().strip() == "0"
