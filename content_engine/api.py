"""HTTP surface for administrative actions and engine stats."""

import asyncio
import threading
from typing import Any, Coroutine, Optional

import structlog
from flask import Flask, Response, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from content_engine.actions import ActionDispatcher
from content_engine.engine import Engine

logger = structlog.get_logger(__name__)

REQUEST_TIMEOUT = 60.0


class EngineLoopThread(threading.Thread):
    """Runs the engine's event loop in a background thread."""

    def __init__(self):
        super().__init__(name="content-engine-loop", daemon=True)
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        self.loop.run_forever()

    def start(self):
        super().start()
        self._ready.wait()

    def submit(self, coro: Coroutine, timeout: Optional[float] = REQUEST_TIMEOUT) -> Any:
        """Run a coroutine on the loop and block until it finishes."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def shutdown(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join()
        self.loop.close()


def create_app(engine: Engine, loop: asyncio.AbstractEventLoop) -> Flask:
    """Create the Flask app bound to ``engine``.

    Args:
        engine: Engine the actions run against
        loop: Running event loop (in another thread) that owns the engine
    """
    app = Flask(__name__)
    dispatcher = ActionDispatcher(engine)

    def run(coro: Coroutine) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, loop).result(REQUEST_TIMEOUT)

    @app.route("/actions", methods=["POST"])
    def actions():
        body = request.get_json(silent=True)
        if not body or "action" not in body:
            return jsonify({"success": False, "error": "Request body must contain an action"}), 400
        result = run(dispatcher.dispatch(body["action"], body.get("data") or {}))
        return jsonify(result), 200 if result["success"] else 400

    @app.route("/stats", methods=["GET"])
    def stats():
        return jsonify(run(dispatcher.dispatch("stats"))), 200

    @app.route("/metrics", methods=["GET"])
    def metrics():
        return Response(generate_latest(engine.metrics.registry), content_type=CONTENT_TYPE_LATEST)

    @app.errorhandler(Exception)
    def handle_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.error("api_request_failed", path=request.path, error=str(e), error_type=type(e).__name__)
        return jsonify({"success": False, "error": str(e)}), 500

    return app


class ServerThread(threading.Thread):
    def __init__(self, app: Flask, host: str, port: int):
        super().__init__(daemon=True)
        self.server = make_server(host, port, app)
        self.ctx = app.app_context()
        self.ctx.push()

    def run(self):
        self.server.serve_forever()

    def shutdown(self):
        self.server.shutdown()


def start_api_server(
    engine: Engine, loop: asyncio.AbstractEventLoop, host: str = "localhost", port: int = 8080
) -> ServerThread:
    """Serve the API in a background thread."""
    server = ServerThread(create_app(engine, loop), host, port)
    server.start()
    logger.info("api_server_started", host=host, port=port)
    return server
