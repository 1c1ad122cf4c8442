"""
strace-backed hook source.

strace is the OS tracing facility that intercepts the open family of calls; this
module turns its `-f -ttt -T` output into `on_entry` / `on_exit` hook calls:

  - '1234 1700000000.000100 openat(AT_FDCWD, "/etc/x", O_RDONLY) = 3 <0.000020>'
      -> entry at the timestamp, exit at timestamp + duration
  - '1234 1700000000.000100 openat(AT_FDCWD, "/etc/x", O_RDONLY <unfinished ...>'
      -> entry
  - '1234 1700000000.000300 <... openat resumed>) = -1 ENOENT (No such file or directory) <0.000200>'
      -> exit at the resumed timestamp; the hooks measure it against the entry
         timestamp, so both ends come from the same (wall) clock
  - '[pid 1234] ...' prefixes are normalized, signal/exit notices are ignored.

The path argument is handed to the entry hook as an undecoded `StracePathRef`;
decoding happens only if the exit hook confirms an anomaly.
"""

from __future__ import annotations

import errno
import io
import logging
import os
import platform
import re
import shutil
import subprocess
import threading
from typing import Dict, List, Optional, Sequence

from ._types import FILENAME_LEN
from .errors import PrerequisiteError
from .hooks import OpenHooks
from .procfs import is_ptrace_allowed

logger = logging.getLogger("strace_source")

OPEN_CALLS = ("open", "openat", "openat2", "creat")

_complete_re = re.compile(
    r"^(\d+)\s+(\d+\.\d+)\s+(\w+)\((.*)\)\s*=\s*(.+?)(?:\s+<(\d+\.\d+)>)?\s*$"
)
_unfinished_re = re.compile(
    r"^(\d+)\s+(\d+\.\d+)\s+(\w+)\((.*?)\s*<unfinished \.\.\.>\s*$"
)
_resumed_re = re.compile(
    r"^(\d+)\s+(\d+\.\d+)\s+<\.\.\.\s+(\w+)\s+resumed>.*?\)?\s*=\s*(.+?)(?:\s+<\d+\.\d+>)?\s*$"
)
_notice_re = re.compile(r"^(\d+)\s+(\d+\.\d+)\s+(?:---|\+\+\+)\s")
_pid_prefix_re = re.compile(r"^\[pid\s+(\d+)\]\s+(.*)$")
_retval_re = re.compile(r"^(-?\d+)(?:<[^>]*>+)?(?:\s+([A-Z][A-Z0-9_]*))?")
_hex2_re = re.compile(r"[0-9a-fA-F]{2}")

_SIMPLE_ESCAPES = {
    ord("n"): b"\n", ord("t"): b"\t", ord("r"): b"\r", ord("v"): b"\v", ord("f"): b"\f",
    ord('"'): b'"', ord("\\"): b"\\",
}


def ts_to_ns(ts: str) -> int:
    """'1700000000.000123' -> nanoseconds, without going through float."""
    sec, _, frac = ts.partition(".")
    return int(sec) * 1_000_000_000 + int((frac + "000000000")[:9])


def parse_retval(retval: str) -> Optional[int]:
    """
    Map strace's return column to a signed return code.

    '3' / '3</etc/passwd>' -> 3, '-1 ENOENT (No such file...)' -> -ENOENT,
    '?' (task died before returning) -> None.
    """
    m = _retval_re.match(retval.strip())
    if not m:
        return None
    value = int(m.group(1))
    name = m.group(2)
    if value == -1 and name:
        code = getattr(errno, name, None)
        if isinstance(code, int):
            return -code
    return value


class StracePathRef:
    """The raw argument text of one call; decoded on demand."""

    __slots__ = ("args",)

    def __init__(self, args: str):
        self.args = args

    def read(self, max_len: int = FILENAME_LEN) -> bytes:
        start = self.args.find('"')
        if start < 0:
            raise ValueError(f"no string argument in {self.args!r}")
        return _unescape(self.args, start + 1, max_len)

    def __repr__(self):
        return f"StracePathRef({self.args!r})"


def _unescape(text: str, pos: int, max_len: int) -> bytes:
    # stops at the closing quote; a string strace cut short just ends early
    out = bytearray()
    n = len(text)
    while pos < n and len(out) < max_len:
        ch = text[pos]
        if ch == '"':
            break
        if ch != "\\" or pos + 1 >= n:
            out += ch.encode("utf-8", "surrogateescape")
            pos += 1
            continue
        nxt = text[pos + 1]
        if nxt == "x" and _hex2_re.match(text, pos + 2):
            out.append(int(text[pos + 2:pos + 4], 16))
            pos += 4
            continue
        if nxt.isdigit():
            digits = re.match(r"[0-7]{1,3}", text[pos + 1:pos + 4])
            if digits:
                out.append(int(digits.group(0), 8) & 0xFF)
                pos += 1 + len(digits.group(0))
                continue
        out += _SIMPLE_ESCAPES.get(ord(nxt), nxt.encode("utf-8", "surrogateescape"))
        pos += 2
    return bytes(out[:max_len])


class StraceLineDriver:
    """Feeds parsed strace lines into a set of hooks."""

    def __init__(self, hooks: OpenHooks, calls: Sequence[str] = OPEN_CALLS):
        self.hooks = hooks
        self.calls = frozenset(calls)
        self.lines_seen = 0
        self.lines_ignored = 0

    def feed(self, raw: str) -> None:
        line = raw.rstrip("\n")
        if not line:
            return
        self.lines_seen += 1

        m = _pid_prefix_re.match(line)
        if m:
            line = f"{m.group(1)} {m.group(2)}"

        m = _complete_re.match(line)
        if m:
            tid, ts, name, args, retval, dur = m.groups()
            if name not in self.calls:
                self.lines_ignored += 1
                return
            ret = parse_retval(retval)
            start_ns = ts_to_ns(ts)
            self.hooks.on_entry(int(tid), start_ns, StracePathRef(args))
            if ret is not None:
                self.hooks.on_exit(int(tid), ret, start_ns + (ts_to_ns(dur) if dur else 0))
            return

        m = _unfinished_re.match(line)
        if m:
            tid, ts, name, args = m.groups()
            if name not in self.calls:
                self.lines_ignored += 1
                return
            self.hooks.on_entry(int(tid), ts_to_ns(ts), StracePathRef(args))
            return

        m = _resumed_re.match(line)
        if m:
            tid, ts, name, retval = m.groups()
            if name not in self.calls:
                self.lines_ignored += 1
                return
            ret = parse_retval(retval)
            if ret is not None:
                self.hooks.on_exit(int(tid), ret, ts_to_ns(ts))
            return

        if not _notice_re.match(line):
            logger.debug("Unrecognized strace line: %s", line)
        self.lines_ignored += 1


def ensure_prereqs(attach: bool = False) -> None:
    """
    Strict preflight:
      - Linux only
      - strace must exist
      - attaching to a running process needs kernel.yama.ptrace_scope=0 (or no Yama)
    """
    if platform.system() != "Linux":
        raise PrerequisiteError("Tracing open calls requires Linux.")

    if shutil.which("strace") is None:
        raise PrerequisiteError(
            "Missing dependency: 'strace' not found in PATH.\n"
            "Fix: sudo apt-get update && sudo apt-get install -y strace"
        )

    if attach and is_ptrace_allowed() is False and os.geteuid() != 0:
        raise PrerequisiteError(
            "Attaching blocked by kernel.yama.ptrace_scope (need 0 or root).\n"
            "Fix (temporary): sudo sysctl -w kernel.yama.ptrace_scope=0"
        )

    logger.info("Tracing prerequisites OK (strace present).")


def build_strace_command(
        output: str,
        command: Optional[Sequence[str]] = None,
        pid: Optional[int] = None,
        calls: Sequence[str] = OPEN_CALLS,
) -> List[str]:
    if (command is None) == (pid is None):
        raise ValueError("exactly one of command or pid is required")
    cmd = [
        "strace", "--quiet=attach,exit", "-f", "-T", "-ttt", "-s", "4096",
        "-e", "trace=" + ",".join(calls), "-o", output,
    ]
    if pid is not None:
        return cmd + ["-p", str(pid)]
    return cmd + ["--"] + list(command)


class StraceSource:
    """
    Runs strace (on a new command or attached to a pid) and drives the hooks from
    a reader thread until strace exits.
    """

    def __init__(self, hooks: OpenHooks, command: Optional[Sequence[str]] = None, pid: Optional[int] = None):
        self.hooks = hooks
        self.command = list(command) if command else None
        self.pid = pid
        self.driver = StraceLineDriver(hooks)
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None

    def __enter__(self) -> StraceSource:
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def start(self) -> None:
        read_fd, write_fd = os.pipe()
        argv = build_strace_command(f"/dev/fd/{write_fd}", command=self.command, pid=self.pid)
        logger.info("Command: %s", " ".join(argv))
        try:
            self._proc = subprocess.Popen(argv, pass_fds=(write_fd,))
        except OSError:
            os.close(read_fd)
            raise
        finally:
            os.close(write_fd)

        self._reader = threading.Thread(target=self._read_loop, args=(read_fd,), name="strace-reader", daemon=True)
        self._reader.start()

    def _read_loop(self, read_fd: int) -> None:
        with io.open(read_fd, "r", encoding="utf-8", errors="surrogateescape") as stream:
            for line in stream:
                try:
                    self.driver.feed(line)
                except Exception as e:
                    logger.error("Failed to handle strace line %r: %r", line, e,
                                 exc_info=logger.isEnabledFor(logging.DEBUG))
        logger.debug("strace output closed after %d lines", self.driver.lines_seen)

    def running(self) -> bool:
        return self._reader is not None and self._reader.is_alive()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for strace to exit and its output to be fully consumed."""
        if self._proc is None:
            return None
        try:
            code = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        if self._reader is not None:
            self._reader.join(timeout)
        return code

    def stop(self) -> None:
        if self._proc is None:
            return
        if self._proc.poll() is None:
            # strace detaches cleanly on SIGTERM; a command it started keeps running
            # only in attach mode
            self._proc.terminate()
            try:
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
        if self._reader is not None:
            self._reader.join(timeout=5)

    def stats(self) -> Dict[str, int]:
        return {"lines_seen": self.driver.lines_seen, "lines_ignored": self.driver.lines_ignored}
