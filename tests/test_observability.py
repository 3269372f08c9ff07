import json
import threading
from pathlib import Path

from nativepm.observability import StructuredLogger


def test_records_carry_package_version_and_phase() -> None:
    logger = StructuredLogger()
    logger.log(
        operation="build",
        package="zlib",
        version="1.3",
        phase="configure",
        message="Running cmake -S src -B build",
    )
    logger.log(operation="resolve", message="Resolved build plan with 1 package(s).")

    (record,) = logger.records_for_package("zlib")
    assert record == {
        "level": "info",
        "operation": "build",
        "package": "zlib",
        "version": "1.3",
        "phase": "configure",
        "message": "Running cmake -S src -B build",
    }
    assert len(logger.records_for_operation("resolve")) == 1


def test_extra_payload_is_attached_only_when_given() -> None:
    logger = StructuredLogger()
    logger.log(operation="detect", message="none", level="warning", extra={"probed": ["g++"]})
    logger.log(operation="detect", message="plain")

    first, second = logger.records
    assert first["extra"] == {"probed": ["g++"]}
    assert "extra" not in second


def test_concurrent_workers_do_not_lose_records() -> None:
    logger = StructuredLogger()

    def worker(name: str) -> None:
        for i in range(200):
            logger.log(operation="transition", package=name, message=str(i))

    threads = [threading.Thread(target=worker, args=(f"pkg{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(logger.records) == 800
    assert len(logger.records_for_package("pkg2")) == 200


def test_json_lines_export(tmp_path: Path) -> None:
    logger = StructuredLogger()
    logger.log(operation="build", package="fmt", message="first")
    logger.log(operation="build", package="fmt", message="second", level="error")

    path = logger.to_json_lines(tmp_path / "logs" / "run.jsonl")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["first", "second"]
    assert json.loads(lines[1])["level"] == "error"
