"""
Local stand-in for the LeadProsper direct_post endpoint, for live e2e runs.

Endpoints:
- POST /direct_post   -> records the lead, returns {"status": "ACCEPTED", "lead_id": ...}
- POST /_fail         -> body {"count": n, "status": 503}: the next n posts fail with that status
- GET  /_leads        -> every lead received so far
- POST /_reset        -> clears received leads and pending failures
- GET  /_health       -> returns 200
"""
import itertools
import json
import os
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List

LEADS: List[dict] = []
PENDING_FAILURES: List[int] = []
LEAD_IDS = itertools.count(1000)


class Handler(BaseHTTPRequestHandler):
    def _send_json(self, status_code: int, payload: dict) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict:
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length).decode("utf-8") if length else ""
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return {"_raw": raw}

    def do_GET(self):  # noqa: N802
        if self.path == "/_health":
            return self._send_json(200, {"status": "ok"})

        if self.path == "/_leads":
            return self._send_json(200, {"leads": LEADS})

        return self._send_json(404, {"error": "not_found"})

    def do_POST(self):  # noqa: N802
        if self.path == "/_reset":
            LEADS.clear()
            PENDING_FAILURES.clear()
            return self._send_json(200, {"status": "reset"})

        if self.path == "/_fail":
            body = self._read_json()
            PENDING_FAILURES.extend([int(body.get("status", 503))] * int(body.get("count", 1)))
            return self._send_json(200, {"pending_failures": len(PENDING_FAILURES)})

        if self.path.startswith("/direct_post"):
            payload = self._read_json()
            if PENDING_FAILURES:
                failure = PENDING_FAILURES.pop(0)
                return self._send_json(failure, {"status": "ERROR", "message": "simulated failure"})
            if not payload.get("lp_campaign_id"):
                return self._send_json(400, {"status": "ERROR", "message": "lp_campaign_id is required"})

            lead_id = f"mock-{next(LEAD_IDS)}"
            LEADS.append({
                "lead_id": lead_id,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "payload": payload,
            })
            return self._send_json(200, {"status": "ACCEPTED", "lead_id": lead_id, "code": 0})

        return self._send_json(404, {"error": "not_found"})

    def log_message(self, format, *args):  # noqa: A003
        # Silence default logging to keep test output clean.
        return


def main() -> None:
    port = int(os.getenv("MOCK_VENDOR_PORT", "8080"))
    server = ThreadingHTTPServer(("0.0.0.0", port), Handler)
    server.serve_forever()


if __name__ == "__main__":
    main()
