import sys
import threading
import time
from pathlib import Path

import pytest
from conftest import FakeRunner

from nativepm.errors import BuildCancelledError
from nativepm.process import (
    CancelToken,
    CommandSpec,
    ProcessResult,
    SubprocessRunner,
    run_command,
    scoped_build_dir,
)


def test_subprocess_runner_captures_output() -> None:
    result = SubprocessRunner().run(sys.executable, ["-c", "print('configured')"])

    assert result.ok
    assert result.stdout.strip() == "configured"
    assert result.stderr == ""


def test_subprocess_runner_reports_non_zero_exit() -> None:
    result = SubprocessRunner().run(
        sys.executable,
        ["-c", "import sys; sys.stderr.write('undefined reference'); sys.exit(3)"],
    )

    assert result.exit_code == 3
    assert not result.ok
    assert result.diagnostics() == "undefined reference"


def test_subprocess_runner_merges_environment_and_cwd(tmp_path: Path) -> None:
    result = SubprocessRunner().run(
        sys.executable,
        ["-c", "import os; print(os.environ['NATIVEPM_MARKER'], os.getcwd())"],
        cwd=tmp_path,
        env={"NATIVEPM_MARKER": "staged"},
    )

    marker, cwd = result.stdout.split()
    assert marker == "staged"
    assert Path(cwd).resolve() == tmp_path.resolve()


def test_missing_executable_raises_os_error(tmp_path: Path) -> None:
    with pytest.raises(OSError):
        SubprocessRunner().run(str(tmp_path / "no-such-tool"))


def test_cancelled_token_kills_running_process() -> None:
    token = CancelToken()
    runner = SubprocessRunner(cancel=token, poll_interval=0.05)
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()

    try:
        with pytest.raises(BuildCancelledError) as excinfo:
            runner.run(sys.executable, ["-c", "import time; time.sleep(30)"])
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert excinfo.value.code == "E_CANCELLED"


def test_runner_with_live_token_completes_normally() -> None:
    runner = SubprocessRunner(cancel=CancelToken(), poll_interval=0.05)
    result = runner.run(sys.executable, ["-c", "print('ok')"])
    assert result.stdout.strip() == "ok"


def test_cancel_token_is_sticky() -> None:
    token = CancelToken()
    assert not token.cancelled
    token.cancel()
    token.cancel()
    assert token.cancelled


def test_run_command_unpacks_spec(tmp_path: Path) -> None:
    runner = FakeRunner()
    run_command(runner, CommandSpec(argv=("cmake", "--build", "out"), cwd=tmp_path))
    run_command(runner, CommandSpec(argv=("cmake", "--install", "out"), env={"DESTDIR": "/s"}))

    first, second = runner.calls
    assert (first.command, first.arguments, first.cwd, first.env) == (
        "cmake",
        ("--build", "out"),
        tmp_path,
        None,
    )
    assert second.env == {"DESTDIR": "/s"}


def test_command_spec_display() -> None:
    assert CommandSpec(argv=("cmake", "-S", "src")).display() == "cmake -S src"


def test_diagnostics_fall_back_to_stdout_and_keep_the_tail() -> None:
    result = ProcessResult(exit_code=1, stdout="x" * 50 + "tail", stderr="  ")
    assert result.diagnostics(limit=4) == "tail"


def test_scoped_build_dir_is_removed_on_error(tmp_path: Path) -> None:
    captured: list[Path] = []

    with pytest.raises(RuntimeError):
        with scoped_build_dir(tmp_path / "work", prefix="zlib-") as workdir:
            captured.append(workdir)
            (workdir / "partial.o").write_bytes(b"\0")
            raise RuntimeError("interrupted")

    assert captured[0].name.startswith("zlib-")
    assert not captured[0].exists()
    assert list((tmp_path / "work").iterdir()) == []
