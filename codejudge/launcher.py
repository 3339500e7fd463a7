"""Apply resource ceilings to the current process, then exec the target program.

The sandbox runs this file directly with ``python -I -S`` so it must only
import the standard library.

Usage: launcher.py STATUS_FD CPU_SECONDS ADDRESS_SPACE_BYTES FSIZE_BYTES NOFILE -- PROGRAM [ARGS...]
An address space of 0 leaves RLIMIT_AS untouched. STATUS_FD receives
``READY`` just before exec and an error message if exec fails; it is
closed on exec, so the program itself never sees it. -1 disables it.
"""

import os
import resource
import sys

EXEC_FAILED = 127
READY = b"+"


def _set(which: int, value: int) -> None:
    soft, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, value))


def apply_limits(cpu_seconds: int, address_space: int, fsize: int, nofile: int) -> None:
    soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
    # Soft limit raises SIGXCPU, the hard limit one second later is SIGKILL.
    cpu_hard = cpu_seconds + 1
    if hard != resource.RLIM_INFINITY:
        cpu_hard = min(cpu_hard, hard)
    resource.setrlimit(resource.RLIMIT_CPU, (min(cpu_seconds, cpu_hard), cpu_hard))
    if address_space > 0:
        _set(resource.RLIMIT_AS, address_space)
    _set(resource.RLIMIT_FSIZE, fsize)
    _set(resource.RLIMIT_NOFILE, nofile)
    _set(resource.RLIMIT_CORE, 0)


def _report(fd: int, data: bytes) -> None:
    if fd < 0:
        return
    try:
        os.write(fd, data)
    except OSError:
        pass


def main(argv: list[str]) -> int:
    try:
        sep = argv.index("--")
        status_fd, cpu_seconds, address_space, fsize, nofile = (int(v) for v in argv[:sep])
        command = argv[sep + 1:]
    except ValueError:
        sys.stderr.write(__doc__)
        return 2
    if not command:
        sys.stderr.write("launcher: missing program\n")
        return 2

    apply_limits(cpu_seconds, address_space, fsize, nofile)
    if status_fd >= 0:
        os.set_inheritable(status_fd, False)
    _report(status_fd, READY)
    try:
        os.execvp(command[0], command)
    except OSError as e:
        message = f"cannot exec {command[0]}: {e}"
        sys.stderr.write(f"launcher: {message}\n")
        _report(status_fd, message.encode("utf-8", errors="replace"))
    return EXEC_FAILED


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
