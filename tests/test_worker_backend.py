import asyncio
import json
import sys

import pytest

from compiler.command import QUALITY_PREVIEW, CompilationRequest
from compiler.errors import CompileTimeoutError, ConfigurationError, EngineError
from compiler.events import (
    Completed,
    Failed,
    StandardError,
    StandardOutput,
    Started,
    collect_events,
    is_terminal,
)
from compiler.worker_backend import WorkerBackend, default_worker_command


async def _events(backend, request):
    return [event async for event in backend.invoke(request)]


def _payload(event):
    assert isinstance(event, Completed), event
    return json.loads(event.artifact)


def test_backend_requires_module_or_command():
    with pytest.raises(ConfigurationError):
        WorkerBackend()


def test_default_command_runs_worker_runtime():
    command = default_worker_command("openscad_wasm")
    assert command[1].endswith("worker_runtime.py")
    assert command[-2:] == ["--engine-module", "openscad_wasm"]


@pytest.mark.asyncio
async def test_compile_round_trip_reuses_one_worker(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command)
    try:
        first = await _events(
            backend,
            CompilationRequest(
                source_text="cube(10);",
                quality=QUALITY_PREVIEW,
                engine_version="2021.01",
                extra_args=["--enable=roof"],
            ),
        )
        process = backend._process
        second = await _events(backend, CompilationRequest(source_text="sphere(1);", output_format="3mf"))

        assert isinstance(first[0], Started)
        assert [e.text for e in first if isinstance(e, StandardOutput)] == ["Compiling\n"]
        assert _payload(first[-1]) == {
            "source": "cube(10);",
            "format": "stl",
            "args": ["--preview", "--enable=roof"],
        }
        assert _payload(second[-1])["format"] == "3mf"
        assert backend._process is process
        assert backend.pending_count == 0
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_concurrent_requests_are_routed_by_id(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command)
    try:
        results = await asyncio.gather(
            *(
                collect_events(backend.invoke(CompilationRequest(source_text=f"cube({size});")))
                for size in range(5)
            )
        )
        assert [json.loads(r.artifact)["source"] for r in results] == [
            f"cube({size});" for size in range(5)
        ]
        assert all(r.stdout == "Compiling\n" for r in results)
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_error_response_fails_with_stderr(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command)
    try:
        events = await _events(backend, CompilationRequest(source_text="error();"))

        assert sum(1 for event in events if is_terminal(event)) == 1
        assert isinstance(events[-1], Failed)
        assert isinstance(events[-1].error, EngineError)
        assert "Parser error" in str(events[-1].error)
        assert events[-1].error.stderr == "ERROR: bad\n"
        assert any(isinstance(event, StandardError) for event in events)
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_unanswered_request_times_out(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=0.2)
    try:
        events = await _events(backend, CompilationRequest(source_text="hang();"))

        assert isinstance(events[0], Started)
        assert isinstance(events[-1], Failed)
        assert isinstance(events[-1].error, CompileTimeoutError)
        assert backend.pending_count == 0
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_late_response_after_timeout_is_ignored(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=0.1)
    try:
        timed_out = await _events(backend, CompilationRequest(source_text="slow();"))
        assert isinstance(timed_out[-1].error, CompileTimeoutError)

        # The worker answers the expired request before this one.
        backend._compile_timeout = 5.0
        events = await _events(backend, CompilationRequest(source_text="cube(2);"))

        assert _payload(events[-1])["source"] == "cube(2);"
        assert [e.text for e in events if isinstance(e, StandardOutput)] == ["Compiling\n"]
        assert [type(e) for e in timed_out] == [Started, Failed]
        assert backend.pending_count == 0
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_worker_crash_fails_pending_and_requires_reset(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=5.0)
    try:
        waiting = asyncio.ensure_future(
            collect_events(backend.invoke(CompilationRequest(source_text="hang();")))
        )
        await asyncio.sleep(0.1)
        crashed = await collect_events(backend.invoke(CompilationRequest(source_text="crash();")))
        hung = await waiting

        assert isinstance(crashed.error, EngineError)
        assert isinstance(hung.error, EngineError)
        assert "exited with code 3" in str(hung.error)
        assert backend.pending_count == 0

        refused = await _events(backend, CompilationRequest(source_text="cube(1);"))
        assert len(refused) == 1
        assert isinstance(refused[0].error, EngineError)

        await backend.reset()
        recovered = await _events(backend, CompilationRequest(source_text="cube(1);"))
        assert _payload(recovered[-1])["source"] == "cube(1);"
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_version_query(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command)
    try:
        assert await backend.get_version_text() == "OpenSCAD version 2022.03.20"
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_unstartable_worker_fails_the_invocation(tmp_path):
    backend = WorkerBackend(command=[str(tmp_path / "missing-python")])

    events = await _events(backend, CompilationRequest(source_text="cube(1);"))

    assert len(events) == 1
    assert isinstance(events[0].error, EngineError)


@pytest.mark.asyncio
async def test_real_worker_runtime_hosts_engine_module(engine_module):
    backend = WorkerBackend(engine_module=engine_module, compile_timeout=30.0, version_timeout=30.0)
    try:
        events = await _events(
            backend, CompilationRequest(source_text="cube(3);", extra_args=["--enable=lazy-union"])
        )
        assert events[-1] == Completed(b"flags:--enable=lazy-union")
        assert [e.text for e in events if isinstance(e, StandardOutput)] == [
            "Compiling /input.scad\n"
        ]

        failed = await _events(backend, CompilationRequest(source_text="error();"))
        assert isinstance(failed[-1].error, EngineError)
        assert "exited with code 1" in str(failed[-1].error)

        assert "2023.11.04" in await backend.get_version_text()
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_unreadable_worker_output_faults_the_session(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=5.0)
    try:
        events = await _events(backend, CompilationRequest(source_text="garble();"))

        assert isinstance(events[-1], Failed)
        assert "unreadable message" in str(events[-1].error)

        refused = await _events(backend, CompilationRequest(source_text="cube(1);"))
        assert isinstance(refused[0].error, EngineError)

        await backend.reset()
        recovered = await _events(backend, CompilationRequest(source_text="cube(1);"))
        assert _payload(recovered[-1])["source"] == "cube(1);"
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_worker_fault_gives_each_request_its_own_error(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=5.0)
    try:
        waiting = asyncio.ensure_future(
            collect_events(backend.invoke(CompilationRequest(source_text="hang();")))
        )
        await asyncio.sleep(0.1)
        aborted = await collect_events(backend.invoke(CompilationRequest(source_text="abort();")))
        hung = await waiting

        assert aborted.error is not hung.error
        assert aborted.error.stderr == "ERROR from crash request\n"
        assert aborted.error.exit_code == hung.error.exit_code == 3
        assert not hung.error.stderr
        assert "ERROR from crash request" not in str(hung.error)
        assert "ERROR from crash request" not in str(backend._fault)
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_slow_consumer_still_receives_answer_that_arrived_in_time(fake_worker_command):
    backend = WorkerBackend(command=fake_worker_command, compile_timeout=0.5)
    try:
        stream = backend.invoke(CompilationRequest(source_text="cube(4);"))
        assert isinstance(await stream.__anext__(), Started)

        await asyncio.sleep(1.0)
        rest = [event async for event in stream]

        assert [e.text for e in rest if isinstance(e, StandardOutput)] == ["Compiling\n"]
        assert _payload(rest[-1])["source"] == "cube(4);"
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_version_query_timeout_names_the_request():
    silent = [sys.executable, "-c", "import sys\nfor _ in sys.stdin:\n    pass\n"]
    backend = WorkerBackend(command=silent, version_timeout=0.2)
    try:
        with pytest.raises(CompileTimeoutError) as exc:
            await backend.get_version_text()

        assert "Version request timed out after 0.2s" in str(exc.value)
        assert backend.pending_count == 0
    finally:
        await backend.aclose()
