import asyncio
import contextlib

import structlog
import uvicorn
from fastapi import FastAPI


logger = structlog.get_logger()


class UvicornServer:
    """Runs a FastAPI app on uvicorn as a background task of the current loop."""

    name = "http_server"

    def __init__(
        self,
        app: FastAPI,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "warning",
        access_log: bool = False,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._log_level = log_level
        self._access_log = access_log
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start serving in the background."""
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level=self._log_level,
            access_log=self._access_log,
            log_config=None,
        )
        self._server = uvicorn.Server(config)

        self._task = asyncio.create_task(self._server.serve())
        logger.info(f"{self.name}_started", host=self._host, port=self._port)

    async def wait_for_termination(self) -> None:
        if self._task:
            await self._task

    async def stop(self, grace: float = 5.0) -> None:
        """Stop the server, cancelling it if it does not exit within ``grace`` seconds."""
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=grace)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        logger.info(f"{self.name}_stopped")
