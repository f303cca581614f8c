"""Run a message pump that logs and confirms every message on the configured queue."""
import asyncio
import signal
from typing import Any

from loguru import logger

from receiver.app.composition import create_receiver_dependencies
from receiver.app.core import SERVICE_NAME
from receiver.app.domain.models import QueueMessage
from receiver.app.ports.message_receiver import MessageReceiver


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def run_receiver() -> None:
    deps = create_receiver_dependencies()
    await deps.connect()
    receiver: MessageReceiver = deps.receiver

    async def on_message(message: QueueMessage) -> None:
        _log("message_received", message_id=message.id, size=len(message.content))
        await receiver.confirm(message)

    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    try:
        await receiver.start_pump(on_message)
        _log("receiver_started", queue=deps.settings.queue_name, mode=deps.settings.receive_mode)
        await shutdown.wait()
    finally:
        await deps.close()
        _log("receiver_stopped")


def main() -> None:
    try:
        asyncio.run(run_receiver())
    except KeyboardInterrupt:
        _log("receiver_interrupted")
    except Exception as e:
        logger.exception("receiver failed: {}", e)
        raise


if __name__ == "__main__":
    main()
