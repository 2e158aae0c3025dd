import pytest

from storyreel.errors import ProcessError
from storyreel.services.process_runner import ProcessRunner


def test_captures_output():
    result = ProcessRunner(timeout=10).run("sh", ["-c", "echo frames; echo warn >&2"])

    assert result.returncode == 0
    assert result.stdout == "frames\n"
    assert result.stderr == "warn\n"


def test_non_zero_exit_raises_with_last_stderr_line():
    with pytest.raises(ProcessError) as excinfo:
        ProcessRunner(timeout=10).run("sh", ["-c", "echo first >&2; echo 'Invalid data found' >&2; exit 3"])

    assert excinfo.value.returncode == 3
    assert excinfo.value.tool == "sh"
    assert str(excinfo.value) == "sh exited with code 3: Invalid data found"


def test_missing_binary():
    with pytest.raises(ProcessError) as excinfo:
        ProcessRunner().run("storyreel-no-such-tool", ["--version"])

    assert excinfo.value.returncode == 127


def test_timeout():
    with pytest.raises(ProcessError, match="timed out"):
        ProcessRunner(timeout=0.2).run("sh", ["-c", "sleep 5"])
