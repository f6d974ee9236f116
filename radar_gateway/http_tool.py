"""HTTP Tool Connector (optional).

A minimal connector that lets the gateway invoke a tool exposed as an HTTP service.

Enable by setting:
- RADAR_HTTP_TOOL_URL=http://tool:9000
- RADAR_HTTP_TOOL_NAME=...      (optional; defaults to "http_tool")
- RADAR_HTTP_TOOL_API_KEY=...   (optional; forwarded as X-Tool-Api-Key)

This connector uses only the standard library (urllib). The blocking request
runs in a worker thread so the event loop, and with it the executor's
deadline, stays responsive.
"""

from __future__ import annotations

import asyncio
import json
import os
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, Tuple

from .executor import ToolConnector


class HttpToolConnector(ToolConnector):
    """Invoke an external tool via HTTP POST ``{"arguments": ...}``."""

    def __init__(self, tool_name: str, base_url: str, api_key: Optional[str] = None, timeout_s: float = 35.0):
        super().__init__(tool_name)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)

    @classmethod
    def from_env(cls) -> Optional["HttpToolConnector"]:
        url = os.getenv("RADAR_HTTP_TOOL_URL", "").strip()
        if not url:
            return None
        return cls(
            os.getenv("RADAR_HTTP_TOOL_NAME", "http_tool").strip() or "http_tool",
            url,
            api_key=os.getenv("RADAR_HTTP_TOOL_API_KEY") or None,
        )

    def _post(self, arguments: Dict[str, Any]) -> Tuple[bool, Any, Optional[str]]:
        url = f"{self.base_url}/invoke"
        payload = json.dumps({"arguments": arguments}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Tool-Api-Key"] = str(self.api_key)

        req = urllib.request.Request(url, data=payload, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                body = resp.read().decode("utf-8", errors="replace")
                try:
                    data = json.loads(body) if body else {}
                except ValueError:
                    return False, None, f"TOOL_RESPONSE_NOT_JSON: {body[:200]}"
                ok = bool(data.get("ok", True))
                if not ok:
                    return False, None, str(data.get("error", "TOOL_ERROR"))
                return True, data.get("result", data), None
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="replace")
            except OSError:
                body = ""
            return False, None, f"TOOL_HTTP_ERROR_{e.code}: {body[:200]}"
        except (urllib.error.URLError, OSError) as e:
            return False, None, f"TOOL_CONNECT_ERROR: {e}"

    async def invoke(self, arguments: Dict[str, Any]) -> Tuple[bool, Any, Optional[str]]:
        return await asyncio.to_thread(self._post, arguments)
