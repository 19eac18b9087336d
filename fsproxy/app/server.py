"""
fsproxy - Server Runner

uvicorn waits for open connections to finish before running lifespan
teardown. Requests queued on a path lock would keep waiting through
that drain, so the guard is closed as soon as the exit signal arrives.
"""

import asyncio

import uvicorn
from structlog import get_logger

from fsproxy.app.main import fail_lock_waiters

logger = get_logger(__name__)


class FSProxyServer(uvicorn.Server):
    """
    uvicorn server that fails queued lock waiters on exit signals.

    Usage:
        config = uvicorn.Config("fsproxy.app.main:app", host="127.0.0.1", port=8000)
        FSProxyServer(config).run()
    """

    def __init__(self, config: uvicorn.Config):
        super().__init__(config)
        self._loop: asyncio.AbstractEventLoop | None = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig, frame) -> None:
        # May run inside a signal handler; the guard is closed on the loop
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._fail_waiters, sig)
        super().handle_exit(sig, frame)

    @staticmethod
    def _fail_waiters(sig) -> None:
        failed = fail_lock_waiters()
        logger.info("exit_signal_received", signal=str(sig), failed_waiters=failed)
