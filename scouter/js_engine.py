"""
FILE DESCRIPTION: Client for the external JavaScript rendering service.
KEY FUNCTIONS/CLASSES: RendererClient

Contract of the service:
    POST {RENDERER_URL}/render  {"url", "headers"} -> {"success": true, "html": ...} | {"success": false, "error": ...}
    GET  {RENDERER_URL}/health                     -> {"status": "ok"}
"""

from typing import Mapping, Optional

import requests

from scouter.core import (
    RENDERER_URL,
    RENDER_CONNECT_TIMEOUT,
    RENDER_HEALTH_TIMEOUT,
    RENDER_TIMEOUT,
    logger,
)
from scouter.errors import RenderError
from scouter.models import RenderFailure, RenderResult, RenderSuccess


class RendererClient:
    """
    FLOW: Posts the URL and request headers to the renderer -> Validates status and JSON body ->
    Returns RenderSuccess(html) or RenderFailure(error). Never raises for per-page failures.
    """

    def __init__(self, base_url: str = RENDERER_URL, session: Optional[requests.Session] = None,
                 timeout: float = RENDER_TIMEOUT, connect_timeout: float = RENDER_CONNECT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    def render(self, url: str, headers: Optional[Mapping[str, str]] = None) -> RenderResult:
        try:
            return RenderSuccess(html=self._render(url, headers or {}))
        except RenderError as e:
            logger.warning(f"[RENDER] {url}: {e}")
            return RenderFailure(error=str(e), status=getattr(e, "status", 0))

    def _render(self, url, headers) -> str:
        try:
            r = self.session.post(
                f"{self.base_url}/render",
                json={"url": url, "headers": dict(headers)},
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.Timeout as e:
            raise RenderError(f"renderer timeout: {e}")
        except requests.RequestException as e:
            raise RenderError(f"renderer unreachable: {e}")

        if r.status_code != 200:
            error = RenderError(f"renderer returned HTTP {r.status_code}")
            error.status = r.status_code
            raise error
        try:
            payload = r.json()
        except ValueError:
            raise RenderError("renderer returned invalid JSON")
        if not isinstance(payload, dict) or "success" not in payload:
            raise RenderError("renderer response has no success field")
        if not payload.get("success"):
            raise RenderError(payload.get("error") or "renderer reported failure")
        html = payload.get("html")
        if not isinstance(html, str):
            raise RenderError("renderer response has no html")
        return html

    def is_available(self) -> bool:
        try:
            r = self.session.get(f"{self.base_url}/health", timeout=RENDER_HEALTH_TIMEOUT)
            return r.status_code == 200 and r.json().get("status") == "ok"
        except (requests.RequestException, ValueError, AttributeError):
            return False
