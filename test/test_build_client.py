import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from build_server import BuildServer
from build_status_client.dispatcher import RunRequestDispatcher
from build_status_client.models import (
    CompletedSync,
    Enqueued,
    Failed,
    JobState,
    StatusPollingConfig,
)
from build_status_client.orchestrator import JobOrchestrator
from build_status_client.status_client import JobStatusClient

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[BuildServer, None]:
    """Start and yield a test BuildServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = BuildServer(completion_time=0.5, queue_time=0.1)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> StatusPollingConfig:
    """Provide a fast polling configuration for the client."""
    return StatusPollingConfig(poll_interval=0.05, request_timeout=2.0)


async def _build_stack(base_url: str, config: StatusPollingConfig):
    client = JobStatusClient(base_url, config=config)
    orchestrator = JobOrchestrator(client, config=config)
    dispatcher = RunRequestDispatcher(base_url, orchestrator)
    return client, orchestrator, dispatcher


@pytest_asyncio.fixture
async def stack(server, config):
    """Status client, orchestrator and dispatcher wired to the test server."""
    server_instance, port = server
    client, orchestrator, dispatcher = await _build_stack(
        BASE_URL_TEMPLATE.format(port), config
    )
    try:
        yield server_instance, orchestrator, dispatcher
    finally:
        await orchestrator.dispose()
        await dispatcher.close()
        await client.close()


@pytest.mark.asyncio
async def test_async_build_happy_path(stack):
    """Test enqueue, polling through running, and completion."""
    server_instance, orchestrator, dispatcher = stack
    states = []
    orchestrator.table.subscribe(lambda status: states.append(status.state))

    outcome = await dispatcher.start("7")

    assert isinstance(outcome, Enqueued)
    assert outcome.entry_id == server_instance.builds["7"].entry_id
    seeded = orchestrator.table.get("7")
    assert seeded.state == JobState.queued
    assert seeded.entry_id == outcome.entry_id
    assert orchestrator.is_tracking("7")
    assert server_instance.run_requests == [{"materialize": True}]

    event = await orchestrator.wait_for_terminal("7", timeout=5)

    assert event.success
    assert event.entry_id == outcome.entry_id
    assert JobState.running in states
    assert states[-1] == JobState.ok
    assert not orchestrator.is_tracking("7")

    polls = server_instance.status_requests["7"]
    await asyncio.sleep(0.2)
    assert server_instance.status_requests["7"] == polls


@pytest.mark.asyncio
async def test_sync_build_short_circuits_polling(stack):
    """Test the synchronous fast path never starts a poller."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.sync = True

    outcome = await dispatcher.start("7", materialize=False)

    assert isinstance(outcome, CompletedSync)
    assert outcome.result == {"new_count": 42, "delta": 0}
    status = orchestrator.table.get("7")
    assert status.state == JobState.ok
    assert status.progress == 100
    assert not orchestrator.is_tracking("7")
    assert server_instance.run_requests == [{"materialize": False}]

    await asyncio.sleep(0.1)
    assert server_instance.status_requests["7"] == 0


@pytest.mark.asyncio
async def test_sync_build_error_is_failed(stack):
    server_instance, orchestrator, dispatcher = stack
    server_instance.sync = True
    server_instance.fail_build = True

    outcome = await dispatcher.start("7")

    assert isinstance(outcome, Failed)
    assert outcome.reason == "build failed"
    assert orchestrator.table.get("7") is None


@pytest.mark.asyncio
async def test_rejected_build_request(stack):
    """Test a non-success status code comes back as Failed with no side effects."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.run_status_code = 500

    outcome = await dispatcher.start("7")

    assert isinstance(outcome, Failed)
    assert outcome.status_code == 500
    assert outcome.reason == "build rejected"
    assert orchestrator.table.get("7") is None
    assert not orchestrator.is_tracking("7")


@pytest.mark.parametrize(
    "status_code, body",
    [
        (200, '{"status": "ok"}'),
        (200, '{"mode": "sync", "status": "pending"}'),
        (200, "not json"),
        (202, '{"queued": true}'),
        (202, "not json"),
    ],
)
@pytest.mark.asyncio
async def test_malformed_run_response_is_failed(stack, status_code, body):
    """Test success codes without a recognizable body leave no trace."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.run_response = (status_code, body)

    outcome = await dispatcher.start("7")

    assert isinstance(outcome, Failed)
    assert outcome.status_code == status_code
    assert orchestrator.table.get("7") is None
    assert not orchestrator.is_tracking("7")


@pytest.mark.asyncio
async def test_start_after_dispose_is_failed(stack):
    """Test a disposed orchestrator turns new builds into Failed outcomes."""
    server_instance, orchestrator, dispatcher = stack
    await orchestrator.dispose()

    outcome = await dispatcher.start("7")

    assert isinstance(outcome, Failed)
    assert orchestrator.table.get("7") is None
    assert server_instance.run_requests == []


@pytest.mark.asyncio
async def test_sync_build_replaces_running_poller(stack):
    """Test a sync completion stops polling left over from an earlier async build."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.completion_time = 30.0

    await dispatcher.start("7")
    assert orchestrator.is_tracking("7")

    server_instance.sync = True
    outcome = await dispatcher.start("7")

    assert isinstance(outcome, CompletedSync)
    assert not orchestrator.is_tracking("7")
    await asyncio.sleep(0.1)
    polls = server_instance.status_requests["7"]
    await asyncio.sleep(0.15)
    status = orchestrator.table.get("7")
    assert status.state == JobState.ok
    assert status.progress == 100
    assert server_instance.status_requests["7"] == polls


@pytest.mark.asyncio
async def test_rebuild_while_running_follows_new_build(stack):
    """Test a second enqueue during a running build tracks only the new entry."""
    server_instance, orchestrator, dispatcher = stack

    first = await dispatcher.start("7")
    await asyncio.sleep(0.1)
    second = await dispatcher.start("7")

    assert second.entry_id != first.entry_id
    assert orchestrator.table.get("7").entry_id == second.entry_id
    assert orchestrator.active_entities == ["7"]

    event = await orchestrator.wait_for_terminal("7", timeout=5)
    assert event.entry_id == second.entry_id


@pytest.mark.asyncio
async def test_async_build_failure(stack):
    """Test a build that ends in error is reported once as a failure."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.fail_build = True
    failures = []
    orchestrator.on_terminal(failures.append)

    await dispatcher.start("7")
    event = await orchestrator.wait_for_terminal("7", timeout=5)
    await asyncio.sleep(0.15)

    assert not event.success
    assert orchestrator.table.get("7").state == JobState.error
    assert orchestrator.table.get("7").message == "build failed"
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_transient_status_errors_are_tolerated(stack):
    """Test flaky status responses do not surface as job failures."""
    server_instance, orchestrator, dispatcher = stack
    server_instance.error_rate = 0.5

    await dispatcher.start("7")
    event = await orchestrator.wait_for_terminal("7", timeout=10)

    assert event.success


@pytest.mark.asyncio
async def test_rebuild_starts_new_lifecycle(stack):
    """Test a second enqueue after completion is tracked as a new job."""
    server_instance, orchestrator, dispatcher = stack

    first = await dispatcher.start("7")
    await orchestrator.wait_for_terminal("7", timeout=5)
    second = await dispatcher.start("7")

    assert second.entry_id != first.entry_id
    assert orchestrator.table.get("7").state == JobState.queued
    assert orchestrator.is_tracking("7")

    event = await orchestrator.wait_for_terminal("7", timeout=5)
    assert event.entry_id == second.entry_id


@pytest.mark.asyncio
async def test_multiple_entities(stack):
    """Test several builds polled simultaneously."""
    server_instance, orchestrator, dispatcher = stack

    outcomes = await asyncio.gather(*[dispatcher.start(str(i)) for i in range(3)])
    assert all(isinstance(outcome, Enqueued) for outcome in outcomes)

    events = await asyncio.gather(
        *[orchestrator.wait_for_terminal(str(i), timeout=5) for i in range(3)]
    )

    assert [event.entity_id for event in events] == ["0", "1", "2"]
    assert all(event.success for event in events)
    assert orchestrator.active_entities == []


@pytest.mark.asyncio
async def test_server_unavailable(config):
    """Test behavior when server is not available."""
    base_url = "http://localhost:9999"  # Invalid port
    client, orchestrator, dispatcher = await _build_stack(base_url, config)

    try:
        outcome = await dispatcher.start("7")
        status = await orchestrator.poll_once("7")
    finally:
        await orchestrator.dispose()
        await dispatcher.close()
        await client.close()

    assert isinstance(outcome, Failed)
    assert outcome.status_code is None
    assert status.state == JobState.unknown
