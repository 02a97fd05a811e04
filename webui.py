# ==============================================================================
# FILE: webui.py
# PURPOSE: Docker healthcheck plus a read-only stats endpoint.
#          /health -> 200 OK while the process is alive.
#          /stats  -> scheduler state and sync metrics as JSON.
# VARIABLES/DEPENDENCIES: http.server for basic responses.
# ==============================================================================

import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

logger = logging.getLogger(__name__)


def make_handler(stats_provider):
    """Builds a handler class bound to a callable returning the stats dict."""

    class HealthCheckHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path.rstrip('/') in ('', '/health'):
                self._send(200, b"OK", "text/plain")
            elif self.path.rstrip('/') == '/stats':
                try:
                    body = json.dumps(stats_provider(), default=str).encode("utf-8")
                    self._send(200, body, "application/json")
                except Exception as e:
                    logger.error(f"Stats endpoint failed: {e}")
                    self._send(500, b"stats unavailable", "text/plain")
            else:
                self._send(404, b"Not Found", "text/plain")

        def _send(self, status, body, content_type):
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            """Hide healthcheck pings from the logs to keep it clean."""
            pass

    return HealthCheckHandler


def build_server(stats_provider, port, host='0.0.0.0'):
    return ThreadingHTTPServer((host, port), make_handler(stats_provider))


def healthcheck_thread(stats_provider, port=8080):
    """Runs the tiny web server inside the container."""
    try:
        server = build_server(stats_provider, port)
        logger.info(f"Healthcheck server listening on port {port}")
        server.serve_forever()
    except Exception as e:
        logger.error(f"Healthcheck Server Error: {e}")
