import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from radar_gateway.http_tool import HttpToolConnector


class _ToolHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"{}")
        args = body.get("arguments", {})

        if args.get("mode") == "fail":
            payload, status = {"ok": False, "error": "no forecast"}, 200
        elif args.get("mode") == "500":
            payload, status = {"detail": "boom"}, 500
        else:
            payload = {"ok": True, "result": {"args": args, "key": self.headers.get("X-Tool-Api-Key")}}
            status = 200

        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def tool_url():
    server = HTTPServer(("127.0.0.1", 0), _ToolHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.mark.asyncio
async def test_successful_invoke_forwards_arguments_and_key(tool_url):
    conn = HttpToolConnector("weather", tool_url + "/", api_key="k1")
    ok, result, error = await conn.invoke({"city": "Oslo"})
    assert ok and error is None
    assert result == {"args": {"city": "Oslo"}, "key": "k1"}


@pytest.mark.asyncio
async def test_tool_reported_failure(tool_url):
    ok, result, error = await HttpToolConnector("weather", tool_url).invoke({"mode": "fail"})
    assert not ok
    assert result is None
    assert error == "no forecast"


@pytest.mark.asyncio
async def test_http_error_status(tool_url):
    ok, _, error = await HttpToolConnector("weather", tool_url).invoke({"mode": "500"})
    assert not ok
    assert error.startswith("TOOL_HTTP_ERROR_500")


@pytest.mark.asyncio
async def test_unreachable_tool():
    ok, _, error = await HttpToolConnector("weather", "http://127.0.0.1:9", timeout_s=1).invoke({})
    assert not ok
    assert error.startswith("TOOL_CONNECT_ERROR")


def test_from_env(monkeypatch):
    monkeypatch.delenv("RADAR_HTTP_TOOL_URL", raising=False)
    assert HttpToolConnector.from_env() is None

    monkeypatch.setenv("RADAR_HTTP_TOOL_URL", "http://tool:9000")
    monkeypatch.delenv("RADAR_HTTP_TOOL_NAME", raising=False)
    conn = HttpToolConnector.from_env()
    assert conn.tool_name == "http_tool"
    assert conn.base_url == "http://tool:9000"
