"""Short-lived loopback listener that receives the OAuth redirect."""

import asyncio
import contextlib
import socket

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from structlog import get_logger

from agent_providers.exceptions import (
    CallbackServerError,
    OAuthCallbackError,
    OAuthFlowExpiredError,
)


logger = get_logger(__name__)

_SUCCESS_PAGE = """<!doctype html>
<html><head><title>Login complete</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em">
<h2>Login complete</h2><p>You can close this window and return to the app.</p>
</body></html>"""

_STARTUP_POLL_SECONDS = 0.01


class LoopbackCallbackServer:
    """Serves one redirect path on a fixed local port.

    The socket is bound before uvicorn starts, so a port conflict raises
    immediately from `start()`; `start()` only returns once uvicorn reports
    it is accepting connections.
    """

    def __init__(self, host: str, port: int, path: str, expected_state: str):
        self.host = host
        self.port = port
        self.path = path
        self.expected_state = expected_state
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._code: asyncio.Future[str] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        app.get(self.path)(self._handle_callback)
        return app

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params
        if params.get("state") != self.expected_state:
            logger.warning("oauth_callback_state_mismatch", port=self.port)
            return PlainTextResponse("State mismatch", status_code=400)

        error = params.get("error")
        if error:
            description = params.get("error_description") or error
            logger.warning("oauth_callback_error", error=error)
            if self._code is not None and not self._code.done():
                self._code.set_exception(OAuthCallbackError(description))
            return PlainTextResponse(f"Login failed: {description}", status_code=400)

        code = params.get("code")
        if not code:
            return PlainTextResponse("Missing authorization code", status_code=400)

        if self._code is not None and not self._code.done():
            self._code.set_result(code)
        logger.info("oauth_callback_received", port=self.port)
        return HTMLResponse(_SUCCESS_PAGE)

    async def start(self) -> None:
        """Bind the port and start serving.

        Raises:
            CallbackServerError: If the port cannot be bound or uvicorn exits
        """
        loop = asyncio.get_running_loop()
        self._code = loop.create_future()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            logger.error("oauth_callback_bind_failed", port=self.port, error=str(e))
            raise CallbackServerError(
                f"Cannot listen on {self.host}:{self.port} for the OAuth redirect: {e}"
            ) from e

        # Port 0 picks an ephemeral port
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self._build_app(), log_level="error", lifespan="off", access_log=False
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                sock.close()
                raise CallbackServerError("OAuth callback server exited during startup")
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        logger.debug("oauth_callback_server_started", host=self.host, port=self.port)

    async def wait_for_code(self, timeout: float) -> str:
        """Wait for the browser redirect to deliver an authorization code.

        Raises:
            OAuthFlowExpiredError: If no redirect arrives in time
            OAuthCallbackError: If the provider redirected back with an error
        """
        if self._code is None:
            raise OAuthFlowExpiredError("OAuth callback server is not running")
        try:
            return await asyncio.wait_for(asyncio.shield(self._code), timeout)
        except TimeoutError as e:
            raise OAuthFlowExpiredError(
                "Timed out waiting for the OAuth redirect. Please retry login."
            ) from e
        except OAuthCallbackError:
            # Allow another attempt through the same listener
            self.reset_code()
            raise

    def reset_code(self) -> None:
        """Forget the delivered code so the next redirect is awaited."""
        if self._code is not None and not self._code.done():
            return
        self._code = asyncio.get_running_loop().create_future()

    async def close(self) -> None:
        if self._code is not None and not self._code.done():
            self._code.set_exception(OAuthFlowExpiredError("OAuth login expired"))
            # Mark retrieved so an unawaited flow does not log a warning
            self._code.exception()
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._server = None
        logger.debug("oauth_callback_server_stopped", port=self.port)
