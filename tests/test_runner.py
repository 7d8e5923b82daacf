"""Tests for subprocess execution, using the running interpreter as the child."""

import io
import os
import re
import sys

import pytest

from ts_backup.errors import (
    BinaryNotFoundError,
    CommandExitError,
    CommandOutputError,
    CommandStartError,
)
from ts_backup.runner import binary_version, find_binary, run_command

TIMESTAMP_RE = re.compile(r"^\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2} ")


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class BrokenSink(io.StringIO):
    """A sink whose writes always fail."""

    def write(self, s):
        raise OSError("disk full")


# ------------------------------------------------------------------
# Binaries
# ------------------------------------------------------------------


class TestFindBinary:
    """find_binary looks up PATH."""

    def test_missing_binary(self):
        with pytest.raises(BinaryNotFoundError) as exc_info:
            find_binary("definitely-not-a-real-binary-xyz")
        assert exc_info.value.name == "definitely-not-a-real-binary-xyz"
        assert "please make sure it is installed" in str(exc_info.value)

    def test_found_binary(self, tmp_path, monkeypatch):
        binary = tmp_path / "pg_fake"
        binary.write_text("#!/bin/sh\n")
        binary.chmod(0o755)
        monkeypatch.setenv("PATH", str(tmp_path))
        assert find_binary("pg_fake") == str(binary)


class TestBinaryVersion:
    """binary_version returns the --version output."""

    async def test_version_output(self):
        version = await binary_version(sys.executable)
        assert version.startswith("Python 3")

    async def test_missing_executable(self, tmp_path):
        with pytest.raises(CommandStartError, match="failed to get version"):
            await binary_version(str(tmp_path / "nope"))

    async def test_nonzero_exit(self, tmp_path):
        script = tmp_path / "failing"
        script.write_text("#!/bin/sh\nexit 3\n")
        script.chmod(0o755)
        with pytest.raises(CommandExitError) as exc_info:
            await binary_version(str(script))
        assert exc_info.value.returncode == 3


# ------------------------------------------------------------------
# run_command
# ------------------------------------------------------------------


class TestRunCommand:
    """run_command streams both pipes and reports distinct errors."""

    async def test_streams_stdout_and_stderr(self):
        out, err = io.StringIO(), io.StringIO()
        await run_command(
            _python("import sys; print('to out'); print('to err', file=sys.stderr)"),
            out,
            err,
        )
        assert out.getvalue() == "to out\n"
        assert err.getvalue() == "to err\n"

    async def test_filters_drop_matching_lines(self):
        out, err = io.StringIO(), io.StringIO()
        code = (
            "import sys\n"
            "print('1; 2615 2200 SCHEMA - public postgres')\n"
            "print('3; 0 0 COMMENT - EXTENSION timescaledb')\n"
            "print('4; 1259 16386 TABLE public conditions postgres')\n"
            "print('COMMENT - EXTENSION timescaledb', file=sys.stderr)\n"
        )
        await run_command(
            _python(code), out, err, filters=("COMMENT - EXTENSION timescaledb",)
        )
        assert out.getvalue().splitlines() == [
            "1; 2615 2200 SCHEMA - public postgres",
            "4; 1259 16386 TABLE public conditions postgres",
        ]
        assert err.getvalue() == ""

    async def test_prepend_time(self):
        out, err = io.StringIO(), io.StringIO()
        await run_command(_python("print('a'); print('b')"), out, err, prepend_time=True)
        lines = out.getvalue().splitlines()
        assert len(lines) == 2
        for line, expected in zip(lines, ["a", "b"]):
            assert TIMESTAMP_RE.match(line)
            assert line.endswith(expected)

    async def test_no_timestamp_by_default(self):
        out = io.StringIO()
        await run_command(_python("print('plain')"), out, io.StringIO())
        assert out.getvalue() == "plain\n"

    async def test_nonzero_exit(self):
        with pytest.raises(CommandExitError) as exc_info:
            await run_command(
                _python("import sys; sys.exit(2)"), io.StringIO(), io.StringIO()
            )
        assert exc_info.value.returncode == 2
        assert "exited with status 2" in str(exc_info.value)
        assert exc_info.value.argv[0] == sys.executable

    async def test_output_before_failure_is_kept(self):
        err = io.StringIO()
        with pytest.raises(CommandExitError):
            await run_command(
                _python("import sys; print('pg_restore: error: x', file=sys.stderr); sys.exit(1)"),
                io.StringIO(),
                err,
            )
        assert "pg_restore: error: x" in err.getvalue()

    async def test_start_failure(self, tmp_path):
        with pytest.raises(CommandStartError, match="failed to start"):
            await run_command([str(tmp_path / "missing")], io.StringIO(), io.StringIO())

    async def test_sink_failure_still_drains(self):
        # far more output than a pipe buffer holds
        code = "import sys\nfor i in range(50000): print('x' * 80)\n"
        with pytest.raises(CommandOutputError, match="disk full"):
            await run_command(_python(code), BrokenSink(), io.StringIO())

    async def test_exit_error_takes_precedence(self):
        with pytest.raises(CommandExitError):
            await run_command(
                _python("print('x'); raise SystemExit(4)"), BrokenSink(), io.StringIO()
            )

    async def test_both_pipes_drained_concurrently(self):
        out, err = io.StringIO(), io.StringIO()
        code = (
            "import sys\n"
            "for i in range(20000):\n"
            "    sys.stdout.write('o' * 60 + '\\n')\n"
            "    sys.stderr.write('e' * 60 + '\\n')\n"
        )
        await run_command(_python(code), out, err)
        assert len(out.getvalue().splitlines()) == 20000
        assert len(err.getvalue().splitlines()) == 20000

    async def test_env_passed_to_child(self):
        out = io.StringIO()
        await run_command(
            _python("import os; print(os.environ['TS_BACKUP_TEST'])"),
            out,
            io.StringIO(),
            env={**os.environ, "TS_BACKUP_TEST": "yes"},
        )
        assert out.getvalue() == "yes\n"
