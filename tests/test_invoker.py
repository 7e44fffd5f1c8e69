import asyncio
import os
import sys
from pathlib import Path

from archivist.routines import Outcome, RoutineDefinition, RoutineInvoker, RoutineKind


def _python_routine(
    code: str,
    *,
    timeout: float = 30.0,
    transient: frozenset[int] = frozenset(),
) -> RoutineDefinition:
    return RoutineDefinition(
        kind=RoutineKind.SYNC,
        args=(sys.executable, "-c", code),
        timeout_seconds=timeout,
        transient_exit_codes=transient,
    )


def test_successful_routine_captures_output(tmp_path: Path) -> None:
    invoker = RoutineInvoker()
    routine = _python_routine("import os; print('synced', os.getcwd())")

    result = asyncio.run(invoker.invoke(routine, tmp_path, repository="photos"))

    assert result.outcome is Outcome.SUCCESS
    assert result.exit_code == 0
    assert result.excerpt.startswith("synced")
    assert str(tmp_path.resolve()) in result.excerpt
    assert result.ended_at >= result.started_at
    assert not result.interrupted


def test_location_placeholder_is_rendered(tmp_path: Path) -> None:
    routine = RoutineDefinition(
        kind=RoutineKind.FETCH,
        args=(sys.executable, "-c", "import sys; print(sys.argv[1])", "{location}"),
        timeout_seconds=30.0,
    )

    result = asyncio.run(RoutineInvoker().invoke(routine, tmp_path))

    assert result.excerpt == str(tmp_path)


def test_exit_codes_are_classified(tmp_path: Path) -> None:
    invoker = RoutineInvoker()
    transient = _python_routine("import sys; sys.exit(75)", transient=frozenset({75}))
    permanent = _python_routine("import sys; print('bad remote', file=sys.stderr); sys.exit(2)")

    transient_result = asyncio.run(invoker.invoke(transient, tmp_path))
    permanent_result = asyncio.run(invoker.invoke(permanent, tmp_path))

    assert transient_result.outcome is Outcome.TRANSIENT
    assert transient_result.exit_code == 75
    assert permanent_result.outcome is Outcome.PERMANENT
    assert permanent_result.exit_code == 2
    assert "bad remote" in permanent_result.excerpt


def test_timeout_stops_the_process(tmp_path: Path) -> None:
    invoker = RoutineInvoker(kill_grace_seconds=1.0)
    routine = _python_routine("import time; time.sleep(30)", timeout=0.5)

    result = asyncio.run(invoker.invoke(routine, tmp_path))

    assert result.outcome is Outcome.TIMEOUT
    assert "timed out" in result.excerpt
    assert result.duration_seconds < 15
    assert invoker.active_count == 0


def test_output_excerpt_is_bounded_to_the_tail(tmp_path: Path) -> None:
    invoker = RoutineInvoker(output_tail_bytes=100)
    routine = _python_routine("print('x' * 10000); print('END')")

    result = asyncio.run(invoker.invoke(routine, tmp_path))

    assert result.outcome is Outcome.SUCCESS
    assert len(result.excerpt.encode()) <= 100
    assert result.excerpt.endswith("END")


def test_missing_executable_is_permanent(tmp_path: Path) -> None:
    routine = RoutineDefinition(
        kind=RoutineKind.VERIFY,
        args=("definitely-not-a-real-annex-tool", "fsck"),
        timeout_seconds=10.0,
    )

    result = asyncio.run(RoutineInvoker(env={"PATH": str(tmp_path)}).invoke(routine, tmp_path))

    assert result.outcome is Outcome.PERMANENT
    assert result.exit_code is None
    assert "not found" in result.excerpt


def test_missing_location_is_permanent(tmp_path: Path) -> None:
    result = asyncio.run(
        RoutineInvoker().invoke(_python_routine("print('hi')"), tmp_path / "gone")
    )

    assert result.outcome is Outcome.PERMANENT
    assert "missing" in result.excerpt


def test_run_logs_are_written_and_rotated(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    log_dir = tmp_path / "logs"
    invoker = RoutineInvoker(log_dir=log_dir, log_retention=2)
    routine = _python_routine("print('full output line')")

    results = [asyncio.run(invoker.invoke(routine, repo, repository="photos")) for _ in range(3)]

    logs = sorted((log_dir / "photos").glob("sync-*.log"))
    assert len(logs) == 2
    assert results[-1].log_path == str(logs[-1])
    assert "full output line" in logs[-1].read_text(encoding="utf-8")


def test_terminate_all_marks_runs_interrupted(tmp_path: Path) -> None:
    invoker = RoutineInvoker()
    routine = _python_routine("import time; time.sleep(30)")

    async def scenario():
        task = asyncio.create_task(invoker.invoke(routine, tmp_path))
        for _ in range(500):
            if invoker.active_count:
                break
            await asyncio.sleep(0.01)
        invoker.terminate_all()
        return await task

    result = asyncio.run(scenario())

    assert result.outcome is Outcome.TRANSIENT
    assert result.interrupted
    assert invoker.active_count == 0


def test_event_hook_sees_start_and_exit(tmp_path: Path) -> None:
    events: list[dict] = []
    invoker = RoutineInvoker(event_hook=events.append)

    asyncio.run(invoker.invoke(_python_routine("pass"), tmp_path, repository="photos"))

    assert [event["event"] for event in events] == ["invoke_start", "invoke_exit"]
    assert events[1]["outcome"] == "success"
    assert events[1]["repository"] == "photos"


def test_default_environment_is_inherited_from_the_process(tmp_path: Path, monkeypatch) -> None:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    helper = bin_dir / "annex-helper"
    helper.write_text('#!/bin/sh\necho "helper $ARCHIVIST_MARKER"\n', encoding="utf-8")
    helper.chmod(0o755)
    monkeypatch.setenv("PATH", str(bin_dir))
    monkeypatch.setenv("ARCHIVIST_MARKER", "inherited")
    routine = RoutineDefinition(kind=RoutineKind.SYNC, args=("annex-helper",), timeout_seconds=10.0)
    invoker = RoutineInvoker()

    result = asyncio.run(invoker.invoke(routine, tmp_path))

    assert invoker.resolve_executable("annex-helper") == str(helper)
    assert result.outcome is Outcome.SUCCESS
    assert result.excerpt == "helper inherited"


def test_explicit_environment_is_passed_unchanged(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARCHIVIST_MARKER", "inherited")
    routine = _python_routine("import os; print(os.environ.get('ARCHIVIST_MARKER', 'unset'))")

    result = asyncio.run(RoutineInvoker(env={"PATH": os.defpath}).invoke(routine, tmp_path))

    assert result.outcome is Outcome.SUCCESS
    assert result.excerpt == "unset"
