import asyncio

from build_server import BuildServer
from build_status_client.backoff import decode, encode, schedule
from build_status_client.dispatcher import RunRequestDispatcher
from build_status_client.models import ExponentialBackoff, StatusPollingConfig
from build_status_client.orchestrator import JobOrchestrator
from build_status_client.status_client import JobStatusClient


async def status_changed(status):
    progress = f" {status.progress}%" if status.progress is not None else ""
    print(f"Segment {status.entity_id}: {status.state.value}{progress}")


async def build_finished(event):
    outcome = "finished" if event.success else f"failed ({event.message})"
    print(f"Build for segment {event.entity_id} {outcome}")


async def main():
    PORT = 8000
    server = BuildServer(completion_time=6.0, queue_time=1.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    base_url = f"http://localhost:{PORT}"
    config = StatusPollingConfig(poll_interval=1.0)
    client = JobStatusClient(base_url, config)
    orchestrator = JobOrchestrator(client, config=config, on_terminal=build_finished)
    orchestrator.table.subscribe(status_changed)
    dispatcher = RunRequestDispatcher(base_url, orchestrator)

    try:
        outcome = await dispatcher.start("42")
        print(f"Run request: {outcome.kind}")
        if outcome.kind == "enqueued":
            await orchestrator.wait_for_terminal("42", timeout=60.0)
    except TimeoutError as e:
        print(f"Polling timed out: {e}")
    finally:
        await orchestrator.dispose()
        await dispatcher.close()
        await client.close()
        await server.stop()

    policy = ExponentialBackoff(factor=3, min_seconds=30, max_seconds=900)
    encoded = encode(policy)
    print(f"Webhook retry_backoff: {encoded}")
    print(f"Retry delays: {schedule(decode(encoded), 5)}")


if __name__ == "__main__":
    asyncio.run(main())
