"""Service entry point.

Runs three tasks on one event loop:
- the HTTP API (uvicorn)
- the submitter, which signs and broadcasts queued transactions
- the confirmation poller, which settles submitted ones

If a worker dies the whole process shuts down, so a supervisor can restart
it. Claims left behind are recovered by the next submitter on startup.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from txengine.api.app import create_app
from txengine.config import get_settings
from txengine.errors import ConfigurationError
from txengine.services.confirmation_poller import ConfirmationPoller
from txengine.services.nonce_allocator import NonceAllocator
from txengine.services.submitter import Submitter
from txengine.services.transaction_queue import get_transaction_queue
from txengine.signing.factory import get_signer_provider
from txengine.store.database import close_db, init_db

logger = logging.getLogger(__name__)

WORKER_STOP_TIMEOUT = 10


class Application:
    """HTTP API plus the background submission workers."""

    def __init__(self):
        self.settings = get_settings()
        self.submitter: Optional[Submitter] = None
        self.poller: Optional[ConfirmationPoller] = None
        self._shutdown_event = asyncio.Event()
        self._failed = False

    async def start(self):
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        logger.info(
            f"Starting txengine ({self.settings.environment}, "
            f"{self.settings.wallet_backend.value} wallets, networks: {', '.join(self.settings.networks)})"
        )

        self.settings.validate_wallet_backend()
        await init_db()

        # One allocator so resyncs from the poller are seen by the submitter
        queue = get_transaction_queue()
        nonces = NonceAllocator(settings=self.settings, store=queue.store)
        self.submitter = Submitter(queue.store, get_signer_provider(), nonces, self.settings)
        self.poller = ConfirmationPoller(queue.store, nonces, self.settings)

        workers = [
            self._supervise("submitter", self.submitter.run()),
            self._supervise("poller", self.poller.run()),
        ]
        api = self._supervise("api", self._run_api())

        await self._shutdown_event.wait()

        self.submitter.stop()
        self.poller.stop()
        _, pending = await asyncio.wait(workers, timeout=WORKER_STOP_TIMEOUT)
        for task in [*pending, api]:
            task.cancel()
        await asyncio.gather(*pending, api, return_exceptions=True)

        await self._cleanup()
        if self._failed:
            raise SystemExit(1)

    def _supervise(self, name: str, coro) -> asyncio.Task:
        """Run a service task; an unexpected exit shuts the application down."""
        task = asyncio.create_task(coro, name=name)

        def on_done(finished: asyncio.Task):
            if finished.cancelled() or self._shutdown_event.is_set():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"{name} crashed: {error!r}")
                self._failed = True
            else:
                logger.warning(f"{name} exited unexpectedly")
            self.shutdown()

        task.add_done_callback(on_done)
        return task

    async def _run_api(self):
        app = create_app(manage_db=False)
        config = uvicorn.Config(
            app,
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="debug" if self.settings.debug else "info",
        )
        server = uvicorn.Server(config)
        logger.info(f"API listening on {self.settings.api_host}:{self.settings.api_port}")
        await server.serve()

    async def _cleanup(self):
        await close_db()
        logger.info("Shutdown complete")

    def shutdown(self):
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested")
            self._shutdown_event.set()


def main():
    """Console entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e.describe()}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
