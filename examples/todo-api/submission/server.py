"""Sample submission server: a tiny todo API on port 5001."""

import json
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer

TODOS = [
    {"id": 1, "title": "buy milk", "done": False},
    {"id": 2, "title": "write report", "done": True},
]


class TodoHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/todos":
            self._send(200, TODOS)
        elif self.path.startswith("/todos/"):
            todo_id = self.path.rsplit("/", 1)[-1]
            match = [t for t in TODOS if str(t["id"]) == todo_id]
            if match:
                self._send(200, match[0])
            else:
                self._send(404, {"error": "not found"})
        else:
            self._send(404, {"error": "not found"})

    def _send(self, status, payload):
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        print(f"{self.command} {self.path}", flush=True)


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 and sys.argv[1].isdigit() else 5001
    server = HTTPServer(("127.0.0.1", port), TodoHandler)
    print(f"Server listening on {port}", flush=True)
    server.serve_forever()
