"""Subprocess-based sandbox with hard resource ceilings (POSIX only)."""

from __future__ import annotations

import contextlib
import logging
import math
import os
import resource
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Iterator, Sequence

import psutil

from codejudge import launcher
from codejudge.errors import SandboxError
from codejudge.models import ExecutionOutcome, ResourceLimits
from codejudge.registry import RuntimeProfile

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/bin:/bin:/usr/local/bin"
FILE_SIZE_LIMIT = 16 * 1024 * 1024
OPEN_FILES_LIMIT = 64
# Every process of one run inherits this variable, so escaped descendants can be found.
RUN_MARKER = "CODEJUDGE_RUN"

_LAUNCHER = (sys.executable, "-I", "-S", str(Path(launcher.__file__).resolve()))
_ENV_PASSTHROUGH = ("PATH", "LANG", "LC_ALL", "LC_CTYPE")


class LocalSandbox:
    """Runs submissions as child processes in throwaway directories.

    Each child gets its own session (and so its own process group), a
    scrubbed environment carrying a per-run :data:`RUN_MARKER`, rlimits
    applied by :mod:`codejudge.launcher`, and is watched for wall time and
    resident memory of its whole process tree. When a run ends, anything
    still carrying its marker is killed, including descendants that called
    ``setsid`` and were re-parented.

    ``wrapper`` is prepended to every command; point it at ``unshare -rn``
    or ``bwrap`` to take network access away. A wrapper that exits without
    starting the launcher raises :class:`SandboxError`, not a runtime error.
    """

    def __init__(
        self,
        workspace_root: str | Path | None = None,
        wrapper: Sequence[str] = (),
        poll_interval: float = 0.01,
    ) -> None:
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.wrapper = tuple(wrapper)
        self.poll_interval = poll_interval

    @contextlib.contextmanager
    def prepare(
        self,
        source_code: str,
        profile: RuntimeProfile,
        cancel: threading.Event | None = None,
    ) -> Iterator[LocalProgram]:
        """Materialize (and compile) *source_code*; the directory is removed on exit."""
        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
        try:
            workdir = Path(tempfile.mkdtemp(prefix="codejudge_", dir=self.workspace_root))
        except OSError as e:
            raise SandboxError(f"Cannot create sandbox directory: {e}") from e

        try:
            (workdir / profile.source_filename).write_text(source_code, encoding="utf-8")
            program = LocalProgram(self, profile, workdir)
            if profile.requires_compile:
                program.compile(cancel)
            yield program
        finally:
            _remove_tree(workdir)

    def run(
        self,
        source_code: str,
        profile: RuntimeProfile,
        stdin: str = "",
        limits: ResourceLimits | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionOutcome:
        with self.prepare(source_code, profile, cancel) as program:
            if program.compile_failed:
                return program.compile_outcome
            return program.execute(stdin, limits, cancel)

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def execute_argv(
        self,
        argv: list[str],
        workdir: Path,
        stdin: str,
        limits: ResourceLimits,
        profile: RuntimeProfile,
        stage: str = "run",
        cancel: threading.Event | None = None,
    ) -> ExecutionOutcome:
        run_id = uuid.uuid4().hex
        env = _sandbox_env(workdir, run_id)
        if shutil.which(argv[0], path=env["PATH"]) is None:
            raise SandboxError(f"Executable not found: {argv[0]}")

        status_read, status_write = os.pipe()
        address_space = limits.memory_kb * 1024 if profile.limit_address_space else 0
        command = [
            *self.wrapper,
            *_LAUNCHER,
            str(status_write),
            str(max(1, math.ceil(limits.cpu_time_ms / 1000))),
            str(address_space),
            str(FILE_SIZE_LIMIT),
            str(OPEN_FILES_LIMIT),
            "--",
            *argv,
        ]

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workdir),
                env=env,
                start_new_session=True,
                close_fds=True,
                pass_fds=(status_write,),
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(status_read)
            raise SandboxError(f"Failed to start {argv[0]}: {e}") from e
        finally:
            os.close(status_write)

        stdout = _CappedReader(proc.stdout, limits.output_limit_bytes)
        stderr = _CappedReader(proc.stderr, limits.output_limit_bytes)
        feeder = threading.Thread(target=_feed, args=(proc.stdin, stdin.encode()), daemon=True)
        for thread in (stdout, stderr, feeder):
            thread.start()

        monitor = _TreeMonitor(proc.pid)
        deadline = start + limits.wall_time_ms / 1000
        timed_out = oom = cancelled = exited = False
        usage = None
        try:
            while True:
                usage = _try_reap(proc)
                if usage is not None:
                    exited = True
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    break
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                if monitor.sample() > limits.memory_kb:
                    oom = True
                    break
                time.sleep(self.poll_interval)
        finally:
            # Hard kill on every path; the group may already be empty.
            _kill_group(proc.pid)
            monitor.kill_all()
            _kill_tagged(run_id)
            if usage is None:
                usage = _reap(proc)
            for thread in (stdout, stderr, feeder):
                thread.join(timeout=1.0)
            launch_status = _drain_status(status_read)

        wall_time_ms = int((time.monotonic() - start) * 1000)
        peak_memory_kb = max(monitor.peak_kb, int(usage.ru_maxrss) if usage else 0)
        exit_code = proc.returncode if proc.returncode is not None else -signal.SIGKILL
        err_text = stderr.text()

        if exited:
            failure = _launch_failure(launch_status, exit_code, err_text)
            if failure:
                logger.error("%s %s: %s", profile.language, stage, failure)
                raise SandboxError(failure)

        if not timed_out and usage is not None:
            cpu_ms = (usage.ru_utime + usage.ru_stime) * 1000
            timed_out = exit_code == -signal.SIGXCPU or (
                exit_code == -signal.SIGKILL and cpu_ms >= limits.cpu_time_ms
            )
        if not oom and not timed_out:
            oom = peak_memory_kb > limits.memory_kb or (
                exit_code != 0 and any(marker in err_text for marker in profile.oom_markers)
            )

        outcome = ExecutionOutcome(
            stdout=stdout.text(),
            stderr=err_text,
            exit_code=exit_code,
            wall_time_ms=wall_time_ms,
            peak_memory_kb=peak_memory_kb,
            timed_out=timed_out,
            oom=oom,
            stage=stage,
            output_truncated=stdout.truncated or stderr.truncated,
            cancelled=cancelled,
        )
        logger.debug(
            "%s %s: exit=%s wall=%dms mem=%dKB timeout=%s oom=%s",
            profile.language, stage, exit_code, wall_time_ms, peak_memory_kb, timed_out, oom,
        )
        return outcome


class LocalProgram:
    """A submission materialized inside one sandbox directory."""

    def __init__(self, sandbox: LocalSandbox, profile: RuntimeProfile, workdir: Path) -> None:
        self.sandbox = sandbox
        self.profile = profile
        self.workdir = workdir
        self.compile_outcome: ExecutionOutcome | None = None

    @property
    def compile_failed(self) -> bool:
        return self.compile_outcome is not None and not self.compile_outcome.succeeded

    def compile(self, cancel: threading.Event | None = None) -> ExecutionOutcome:
        limits = self.profile.compile_limits
        self.compile_outcome = self.sandbox.execute_argv(
            self.profile.compile_argv(self.workdir, limits),
            self.workdir,
            "",
            limits,
            self.profile,
            stage="compile",
            cancel=cancel,
        )
        return self.compile_outcome

    def execute(
        self,
        stdin: str = "",
        limits: ResourceLimits | None = None,
        cancel: threading.Event | None = None,
        source_code: str | None = None,
    ) -> ExecutionOutcome:
        """Run the program once. *source_code* replaces the source (interpreted languages only)."""
        if self.compile_failed:
            raise SandboxError("Cannot run a program that failed to compile")
        if source_code is not None:
            if self.profile.requires_compile:
                raise ValueError("Source can only be replaced for interpreted languages")
            (self.workdir / self.profile.source_filename).write_text(source_code, encoding="utf-8")
        limits = limits or self.profile.limits
        return self.sandbox.execute_argv(
            self.profile.run_argv(self.workdir, limits),
            self.workdir,
            stdin,
            limits,
            self.profile,
            cancel=cancel,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _CappedReader(threading.Thread):
    """Drains a pipe, keeping at most *limit* bytes."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(65536)
                if not chunk:
                    break
                room = self._limit - self._size
                if room > 0:
                    self._chunks.append(chunk[:room])
                    self._size += min(room, len(chunk))
                if len(chunk) > room:
                    self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after the child was killed
        finally:
            self._stream.close()

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _feed(stream: IO[bytes], data: bytes) -> None:
    # The child may exit without reading its input.
    with contextlib.suppress(BrokenPipeError, OSError, ValueError):
        if data:
            stream.write(data)
            stream.flush()
    with contextlib.suppress(BrokenPipeError, OSError, ValueError):
        stream.close()


class _TreeMonitor:
    """Samples resident memory of a process and all its descendants."""

    def __init__(self, pid: int) -> None:
        self.peak_kb = 0
        self._seen: dict[int, psutil.Process] = {}
        try:
            self._root: psutil.Process | None = psutil.Process(pid)
        except psutil.Error:
            self._root = None

    def sample(self) -> int:
        if self._root is None:
            return 0
        procs = [self._root]
        with contextlib.suppress(psutil.Error):
            procs.extend(self._root.children(recursive=True))
        total = 0
        for proc in procs:
            if proc is not self._root:
                self._seen.setdefault(proc.pid, proc)
            try:
                total += proc.memory_info().rss
            except psutil.Error:
                continue
        kb = total // 1024
        self.peak_kb = max(self.peak_kb, kb)
        return kb

    def kill_all(self) -> None:
        """Kill descendants that may have left the process group."""
        for proc in self._seen.values():
            with contextlib.suppress(psutil.Error):
                proc.kill()


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_tagged(run_id: str) -> None:
    """Kill processes that left both the group and the tree but still carry *run_id*."""
    for _ in range(3):
        tagged = []
        for proc in psutil.process_iter(["environ"]):
            environ = proc.info.get("environ") or {}
            if environ.get(RUN_MARKER) == run_id:
                tagged.append(proc)
        if not tagged:
            return
        for proc in tagged:
            with contextlib.suppress(psutil.Error):
                proc.kill()
        # A process may fork again between the scan and the kill.
        time.sleep(0.01)


def _drain_status(fd: int) -> bytes:
    chunks = []
    try:
        os.set_blocking(fd, False)
        while True:
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            chunks.append(chunk)
    except BlockingIOError:
        pass
    finally:
        os.close(fd)
    return b"".join(chunks)


def _launch_failure(status: bytes, exit_code: int, stderr: str) -> str | None:
    """Describe a wrapper or launcher failure, None when the program itself ran."""
    if not status.startswith(launcher.READY):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        return f"Sandbox wrapper failed before launch (exit {exit_code}): {detail}"
    message = status[len(launcher.READY):]
    if message:
        return f"Launcher failed: {message.decode('utf-8', errors='replace')}"
    return None


class _EmptyUsage:
    """Stand-in rusage when the child was reaped elsewhere."""

    ru_maxrss = 0
    ru_utime = 0.0
    ru_stime = 0.0


_EMPTY_USAGE = _EmptyUsage()


def _try_reap(proc: subprocess.Popen) -> resource.struct_rusage | _EmptyUsage | None:
    """Non-blocking reap; returns the child's rusage once it has exited."""
    try:
        pid, status, usage = os.wait4(proc.pid, os.WNOHANG)
    except ChildProcessError:
        proc.poll()
        return _EMPTY_USAGE if proc.returncode is not None else None
    if pid == 0:
        return None
    proc.returncode = os.waitstatus_to_exitcode(status)
    return usage


def _reap(proc: subprocess.Popen) -> resource.struct_rusage | _EmptyUsage:
    try:
        _, status, usage = os.wait4(proc.pid, 0)
    except ChildProcessError:
        proc.wait()
        return _EMPTY_USAGE
    proc.returncode = os.waitstatus_to_exitcode(status)
    return usage


def _sandbox_env(workdir: Path, run_id: str) -> dict[str, str]:
    env = {key: os.environ[key] for key in _ENV_PASSTHROUGH if key in os.environ}
    env.setdefault("PATH", DEFAULT_PATH)
    env["HOME"] = str(workdir)
    env["TMPDIR"] = str(workdir)
    env[RUN_MARKER] = run_id
    return env


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Failed to remove sandbox directory %s: %s", path, e)
