"""
API Connector: HTTP calls made by chatbot API_NODEs.

Tenant-authored nodes name an endpoint, method, headers and body.
``{{name}}`` placeholders are filled from the flow variables (the
customer's phone, their last message, earlier API results). The result
is handed back to the flow as data; a failed call never stops the flow.
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import ApiCall

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


def _lookup(variables: dict[str, Any], path: str) -> Any:
    current: Any = variables
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def render(value: Any, variables: dict[str, Any]) -> Any:
    """Fill ``{{var}}`` placeholders in strings, recursing into dicts and lists."""
    if isinstance(value, str):
        def replacer(match):
            found = _lookup(variables, match.group(1))
            return match.group(0) if found is None else str(found)
        return _PLACEHOLDER.sub(replacer, value)
    if isinstance(value, dict):
        return {k: render(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, variables) for v in value]
    return value


class ApiConnector:
    """Executes API_NODE requests over a shared httpx client."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self._timeout)
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def call(self, api: ApiCall, variables: dict[str, Any] = None) -> dict[str, Any]:
        """Run the call; the result always has ``ok`` and ``status_code``."""
        variables = variables or {}
        method = (api.method or "GET").upper()
        if method not in _ALLOWED_METHODS:
            logger.warning("flow_api_bad_method", method=method, endpoint=api.endpoint)
            return {"ok": False, "status_code": 0, "error": f"unsupported method {method}"}

        url = render(api.endpoint, variables)
        kwargs: dict[str, Any] = {"headers": render(dict(api.headers), variables)}
        body = render(api.body, variables)
        if isinstance(body, str) and body.strip():
            try:
                body = json.loads(body)
            except ValueError:
                kwargs["content"] = body
                body = None
        if body not in (None, "") and method != "GET":
            kwargs["json"] = body

        try:
            response = await self._request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("flow_api_call_failed", endpoint=url, error=str(e))
            return {"ok": False, "status_code": 0, "error": str(e)}

        try:
            data = response.json()
        except ValueError:
            data = response.text
        ok = response.is_success
        log = logger.info if ok else logger.warning
        log("flow_api_called", endpoint=url, method=method, status_code=response.status_code)
        return {"ok": ok, "status_code": response.status_code, "data": data}

    async def close(self):
        if self.client is not None and self._owns_client:
            await self.client.aclose()
