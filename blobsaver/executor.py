# executor.py
"""
Runs tsschecker and collects everything it prints.

tsschecker only logs fully when it believes it is talking to a terminal, so on
POSIX the child gets a pseudo-terminal for stdin/stdout/stderr. Windows has no
pty, there the output comes through a merged pipe instead.
"""
from __future__ import annotations

import errno
import logging
import os
import re
import select
import subprocess
import threading
import time
from typing import Callable, List, Optional

from blobsaver.errors import Reportable

logger = logging.getLogger(__name__)

# Terminal control codes break pasting the log into some editors
NON_PRINTABLE_NON_WHITESPACE = re.compile(r"[^\x20-\x7e\n\r]+")

XTERM_ENV = {"TERM": "xterm"}

POLL_INTERVAL = 0.1


def strip_non_printable(text: str) -> str:
    return NON_PRINTABLE_NON_WHITESPACE.sub("", text)


class TSSCheckerRunner:
    def __init__(self, timeout: Optional[float] = None,
                 on_line: Optional[Callable[[str], None]] = None) -> None:
        self.timeout = timeout
        self.on_line = on_line

    def run(self, args: List[str], cancel_event: Optional[threading.Event] = None) -> str:
        """Execute tsschecker and return its sanitized, combined output."""
        logger.info("Running: %s", args)
        if hasattr(os, "openpty"):
            output = self._run_with_pty(args, cancel_event)
        else:
            output = self._run_with_pipe(args, cancel_event)
        return strip_non_printable(output)

    # ---------- spawning ----------
    def _spawn(self, args, **kwargs) -> subprocess.Popen:
        env = dict(os.environ)
        env.update(XTERM_ENV)
        try:
            return subprocess.Popen(args, env=env, **kwargs)
        except OSError as e:
            raise Reportable("There was an error starting TSSChecker.", original_exception=e) from e

    def _run_with_pty(self, args, cancel_event) -> str:
        master, slave = os.openpty()
        try:
            proc = self._spawn(args, stdin=slave, stdout=slave, stderr=slave, close_fds=True)
        except Reportable:
            os.close(master)
            raise
        finally:
            os.close(slave)

        deadline = time.monotonic() + self.timeout if self.timeout else None
        lines: List[str] = []
        pending = b""
        try:
            while True:
                self._check_stop(proc, cancel_event, deadline)
                ready, _, _ = select.select([master], [], [], POLL_INTERVAL)
                if not ready:
                    if proc.poll() is not None:
                        break
                    continue
                try:
                    chunk = os.read(master, 4096)
                except OSError as e:
                    # Linux reports EIO once the child side of the pty is closed
                    if e.errno == errno.EIO:
                        break
                    raise
                if not chunk:
                    break
                pending += chunk
                *complete, pending = pending.split(b"\n")
                for raw in complete:
                    self._add_line(lines, raw)
            if pending:
                self._add_line(lines, pending)
        except OSError as e:
            self._kill(proc)
            raise Reportable("Encountered IO exception while reading TSSChecker output.",
                             original_exception=e) from e
        finally:
            os.close(master)

        self._wait(proc, cancel_event, deadline)
        return "".join(lines)

    def _run_with_pipe(self, args, cancel_event) -> str:
        proc = self._spawn(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        deadline = time.monotonic() + self.timeout if self.timeout else None
        lines: List[str] = []
        # a blocking readline cannot observe cancellation, so a watcher does it
        stop = threading.Event()
        watcher = threading.Thread(target=self._watch, args=(proc, cancel_event, deadline, stop),
                                   daemon=True)
        watcher.start()
        try:
            for raw in iter(proc.stdout.readline, b""):
                self._add_line(lines, raw)
        except OSError as e:
            self._kill(proc)
            raise Reportable("Encountered IO exception while reading TSSChecker output.",
                             original_exception=e) from e
        finally:
            stop.set()
            proc.stdout.close()
        self._wait(proc, cancel_event, deadline)
        return "".join(lines)

    # ---------- helpers ----------
    def _add_line(self, lines: List[str], raw: bytes) -> None:
        # the pty turns "\n" into "\r\n"
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        lines.append(line + "\n")
        logger.debug("tsschecker: %s", line)
        if self.on_line:
            self.on_line(line)

    def _check_stop(self, proc, cancel_event, deadline) -> None:
        if cancel_event is not None and cancel_event.is_set():
            self._kill(proc)
            raise Reportable("TSSChecker was interrupted while waiting for TSSChecker to finish executing.")
        if deadline is not None and time.monotonic() > deadline:
            self._kill(proc)
            raise Reportable(f"TSSChecker did not finish within {self.timeout:g} seconds.")

    def _watch(self, proc, cancel_event, deadline, stop) -> None:
        while not stop.is_set() and proc.poll() is None:
            if (cancel_event is not None and cancel_event.is_set()) or \
                    (deadline is not None and time.monotonic() > deadline):
                self._kill(proc)
                return
            stop.wait(POLL_INTERVAL)

    def _wait(self, proc, cancel_event, deadline) -> int:
        while True:
            self._check_stop(proc, cancel_event, deadline)
            try:
                code = proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                continue
            logger.info("tsschecker exited with code %s", code)
            return code

    def _kill(self, proc) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


def run_tsschecker(args: List[str], timeout: Optional[float] = None,
                   cancel_event: Optional[threading.Event] = None,
                   on_line: Optional[Callable[[str], None]] = None) -> str:
    return TSSCheckerRunner(timeout=timeout, on_line=on_line).run(args, cancel_event)
