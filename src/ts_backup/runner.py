"""Subprocess execution for the wrapped PostgreSQL binaries.

``run_command`` streams both stdout and stderr of a child process while it
runs, optionally dropping lines that contain a filter substring and
optionally prefixing surviving lines with a timestamp.

Both pipes are drained concurrently by two reader coroutines.  Reading one
stream to completion before the other would deadlock as soon as the child
fills the undrained pipe's buffer.

Usage:
    from ts_backup.runner import find_binary, run_command

    pg_dump = find_binary("pg_dump")
    await run_command([pg_dump, "--version"])
    await run_command(
        [pg_restore, dump_dir, "--list"],
        stdout=toc_file,
        filters=("COMMENT - EXTENSION timescaledb",),
    )
"""

import asyncio
import contextlib
import logging
import shutil
import sys
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import TextIO

from ts_backup.errors import (
    BinaryNotFoundError,
    CommandExitError,
    CommandOutputError,
    CommandStartError,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S "
STREAM_LIMIT = 1024 * 1024  # longest line a reader accepts


def timestamp() -> str:
    """Current local time in the prefix format used for streamed output."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def find_binary(name: str) -> str:
    """Locate a binary on PATH.

    Raises:
        BinaryNotFoundError: If the binary is not installed.
    """
    path = shutil.which(name)
    if path is None:
        raise BinaryNotFoundError(name)
    return path


async def binary_version(path: str) -> str:
    """Return the ``--version`` output of a binary.

    Raises:
        CommandStartError: If the binary cannot be executed.
        CommandExitError: If ``--version`` exits nonzero.
    """
    argv = [path, "--version"]
    name = Path(path).name
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise CommandStartError(f"failed to get version of {name}: {e}", argv) from e

    out, _ = await process.communicate()
    if process.returncode != 0:
        raise CommandExitError(
            f"failed to get version of {name}: exit status {process.returncode}",
            argv,
            process.returncode,
        )
    return out.decode(errors="replace").strip()


async def run_command(
    argv: Sequence[str],
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
    *,
    prepend_time: bool = False,
    filters: Iterable[str] = (),
    env: Mapping[str, str] | None = None,
) -> None:
    """Run a command, streaming its output until it exits.

    Args:
        argv: Program and arguments.
        stdout: Sink for the child's stdout lines (default: ``sys.stdout``).
        stderr: Sink for the child's stderr lines (default: ``sys.stderr``).
        prepend_time: Prefix every written line with ``YYYY/MM/DD HH:MM:SS``.
        filters: Literal substrings; lines containing any of them are dropped
            from both streams.
        env: Environment for the child (default: inherit).

    Raises:
        CommandStartError: If the process could not be started.
        CommandExitError: If the process exited with a nonzero status.
        CommandOutputError: If writing to a sink failed.  The stream is
            still drained to the end so the child never blocks.
    """
    argv = list(argv)
    name = Path(argv[0]).name
    stdout = stdout if stdout is not None else sys.stdout
    stderr = stderr if stderr is not None else sys.stderr
    filters = tuple(filters)

    logger.debug("running %s", " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        raise CommandStartError(f"{name} failed to start: {e}", argv) from e

    try:
        # wait() must only be called once both readers are done
        out_error, err_error = await asyncio.gather(
            _copy_lines(process.stdout, stdout, prepend_time, filters),
            _copy_lines(process.stderr, stderr, prepend_time, filters),
        )
        returncode = await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        raise

    if returncode != 0:
        raise CommandExitError(
            f"{name} exited with status {returncode}", argv, returncode
        )
    output_error = out_error or err_error
    if output_error is not None:
        raise CommandOutputError(
            f"failed to capture output of {name}: {output_error}", argv
        ) from output_error


async def _copy_lines(
    stream: asyncio.StreamReader,
    sink: TextIO,
    prepend_time: bool,
    filters: tuple[str, ...],
) -> Exception | None:
    """Copy lines from a child pipe to a sink until EOF.

    Returns the first error met instead of raising, after draining the pipe.
    """
    error: Exception | None = None
    sink_ok = True
    while True:
        try:
            raw = await stream.readline()
        except ValueError as e:
            # line longer than STREAM_LIMIT; the reader discards it
            error = error or e
            continue
        if not raw:
            return error

        line = raw.decode(errors="replace").rstrip("\r\n")
        if not sink_ok or any(f in line for f in filters):
            continue
        if prepend_time:
            line = timestamp() + line
        try:
            sink.write(line + "\n")
            sink.flush()
        except (OSError, ValueError) as e:
            error = error or e
            sink_ok = False
