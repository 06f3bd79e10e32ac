"""
Flask HTTP API for the plotter bridge.

Provides endpoints for:
- Batch command ingestion (POST /batch-queue)
- Health check and relay/queue status
- Recent structured log entries
"""

import threading
from typing import Optional, Dict, Any

from flask import Flask, jsonify, request, Response
from flask_cors import CORS
from werkzeug.serving import make_server

from plotbridge.core import CommandQueue, CommandRelay, QueueFullError
from plotbridge.logger import (
    get_logger, LogLevel, get_log_categories, get_log_levels
)


def split_batch(text: str) -> list:
    """Split a batch body into commands, dropping empty lines."""
    return [line for line in text.split("\n") if line]


def create_app(
    command_queue: CommandQueue,
    relay: Optional[CommandRelay] = None,
    device_name: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None
) -> Flask:
    """
    Create and configure Flask application.

    Args:
        command_queue: Queue the ingestion endpoint feeds
        relay: Relay worker, used only for status reporting
        device_name: Serial port name, used only for status reporting
        config: Application configuration

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)
    CORS(app)

    app.command_queue = command_queue
    app.relay = relay
    app.device_name = device_name
    app.config_data = config or {}

    syslog = get_logger()

    # === Command ingestion ===

    @app.route('/batch-queue', methods=['POST'])
    def batch_queue():
        """Queue a newline-separated batch of commands."""
        body = request.get_data(cache=False)

        try:
            text = body.decode('utf-8')
        except UnicodeDecodeError:
            syslog.api("Rejected batch: body is not valid UTF-8",
                       level=LogLevel.WARNING, source="batch-queue")
            return Response(status=400)

        if "\r" in text:
            syslog.api("Rejected batch: carriage return in body",
                       level=LogLevel.WARNING, source="batch-queue")
            return Response(status=400)

        commands = split_batch(text)

        try:
            count = app.command_queue.put_batch(commands)
        except QueueFullError as e:
            syslog.queue(f"Rejected batch of {len(commands)}: {e}",
                         level=LogLevel.WARNING, source="batch-queue")
            return Response(status=503)

        syslog.queue(f"Queued {count} command(s), depth {app.command_queue.depth}",
                     source="batch-queue")
        return Response(status=200)

    # === Health and Status ===

    @app.route('/api/health', methods=['GET'])
    def health():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'relay_state': app.relay.state.name if app.relay else 'N/A',
            'device': app.device_name
        })

    @app.route('/api/status', methods=['GET'])
    def status():
        """Get queue and relay status."""
        relay_status = None
        if app.relay:
            relay_status = {
                'state': app.relay.state.name,
                'relayed': app.relay.relayed_count,
                'last_command': app.relay.last_command,
                'last_response': app.relay.last_response,
                'last_response_time': (app.relay.last_response_time.isoformat()
                                       if app.relay.last_response_time else None),
                'last_error': app.relay.last_error
            }

        return jsonify({
            'device': app.device_name,
            'queue': {
                'depth': app.command_queue.depth,
                'max_depth': app.command_queue.max_depth,
                'total_enqueued': app.command_queue.total_enqueued
            },
            'relay': relay_status
        })

    # === Logs ===

    @app.route('/api/logs', methods=['GET'])
    def api_get_logs():
        """Get logs with optional filters."""
        level = request.args.get('level')
        category = request.args.get('category')
        since_id = request.args.get('since_id', type=int)
        search = request.args.get('search')
        limit = request.args.get('limit', 500, type=int)

        try:
            logs = syslog.get_logs(level, category, since_id, search, min(limit, 1000))
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        return jsonify({'logs': logs})

    @app.route('/api/logs/categories', methods=['GET'])
    def api_get_log_categories():
        return jsonify({'categories': get_log_categories()})

    @app.route('/api/logs/levels', methods=['GET'])
    def api_get_log_levels():
        return jsonify({'levels': get_log_levels()})

    @app.route('/api/logs/stats', methods=['GET'])
    def api_get_log_stats():
        return jsonify(syslog.get_stats())

    return app


class APIServer:
    """
    Threaded WSGI server wrapper for the Flask app.

    stop() stops accepting connections and waits for in-flight requests.
    """

    def __init__(self, app: Flask, host: str = '::', port: int = 7878):
        """
        Initialize API server.

        Args:
            app: Flask application instance
            host: Host address to bind
            port: Port number
        """
        self._app = app
        self._host = host
        self._port = port
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        """Bound port (useful when started with port 0)."""
        if self._server is not None:
            return self._server.server_port
        return self._port

    def _make_server(self):
        server = make_server(self._host, self._port, self._app, threaded=True)
        # Join request threads on close so responses can flush
        server.daemon_threads = False
        server.block_on_close = True
        return server

    def start(self, threaded: bool = True) -> None:
        """
        Start the API server.

        Args:
            threaded: Run in background thread if True
        """
        self._server = self._make_server()
        get_logger().api(f"HTTP server listening on {self._host}:{self.port}", source="server")

        if threaded:
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="api-server",
                daemon=True
            )
            self._thread.start()
        else:
            self._server.serve_forever()

    def stop(self) -> None:
        """Stop accepting requests and wait for in-flight ones to finish."""
        if self._server is None:
            return

        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._server = None
        get_logger().api("HTTP server stopped", source="server")
