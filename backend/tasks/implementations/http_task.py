"""HTTP handler implementations.

ServiceCallHandler backs ServiceTask steps ("service_call"); WebhookHandler
backs call_webhook actions. Both validate the target against SSRF rules,
send the request with httpx and map the response to a HandlerResult.
"""

import ipaddress
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import get_settings
from core.utils import get_param
from tasks.base_task import BaseHandler, HandlerResult

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (5432, 6379)


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
        return ip.is_private or ip.is_loopback or ip.is_reserved
    except (ValueError, AttributeError):
        return False


def validate_url_safety(url: str, allow_private: bool = False) -> None:
    """Validate URL for SSRF protection.

    Blocks non-HTTP(S) schemes, localhost aliases, private IP literals
    and internal database ports.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '<none>'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if allow_private:
        return

    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")

    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    if parsed.port and parsed.port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


class _HttpHandler(BaseHandler):
    """Shared request/response plumbing for the HTTP handlers."""

    default_method = "POST"

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        allow_private_hosts: bool = False,
    ):
        self.transport = transport
        self.allow_private_hosts = allow_private_hosts

    async def _send(
        self,
        url: Optional[str],
        method: str,
        headers: Dict[str, Any],
        params: Dict[str, Any],
        body: Any,
        timeout: float,
    ) -> HandlerResult:
        if not url:
            return HandlerResult.fail("Missing required parameter: url", "ConfigurationError")

        try:
            validate_url_safety(url, allow_private=self.allow_private_hosts)
        except ValueError as e:
            return HandlerResult.fail(str(e), "UnsafeUrlError")

        method = method.upper()
        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": {str(k): str(v) for k, v in headers.items()},
            "params": params,
        }
        if body is not None and method in ("POST", "PUT", "PATCH"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            return HandlerResult.fail(f"Request timed out after {timeout}s", "TimeoutError")
        except httpx.ConnectError as e:
            return HandlerResult.fail(f"Connection failed: {e}", "ConnectionError")
        except httpx.HTTPError as e:
            return HandlerResult.fail(f"HTTP request failed: {e}", type(e).__name__)

        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        output = {
            "status_code": response.status_code,
            "data": response_data,
            "url": str(response.url),
        }

        if response.status_code >= 400:
            return HandlerResult.fail(f"HTTP {response.status_code}", f"HTTP{response.status_code}", output=output)
        return HandlerResult.ok(output)


class ServiceCallHandler(_HttpHandler):
    """Call an external service for a ServiceTask step.

    Parameters:
        service_url: Target URL (required; ``url`` accepted too)
        method: HTTP method (default: POST)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body; defaults to the step input when omitted
        timeout: Request timeout in seconds
    """

    handler_type = "service_call"
    display_name = "Service Call"
    description = "Invoke an external HTTP service"

    async def execute(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> HandlerResult:
        body = get_param(parameters, "body", "payload")
        if body is None:
            body = context.get("input", {})
        return await self._send(
            url=get_param(parameters, "service_url", "url"),
            method=get_param(parameters, "method", default=self.default_method),
            headers=get_param(parameters, "headers", default={}),
            params=get_param(parameters, "params", default={}),
            body=body,
            timeout=float(get_param(parameters, "timeout", default=get_settings().HANDLER_HTTP_TIMEOUT_SECONDS)),
        )


class WebhookHandler(_HttpHandler):
    """Fire a webhook for a call_webhook action.

    Parameters:
        url: Target URL (required)
        method: HTTP method (default: POST)
        payload: JSON payload
        headers: Dict of HTTP headers
    """

    handler_type = "call_webhook"
    display_name = "Webhook"
    description = "Send a webhook request"

    async def execute(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> HandlerResult:
        payload = get_param(parameters, "payload", "body")
        if payload is None:
            payload = {
                "execution_id": context.get("execution_id"),
                "step_id": context.get("step_id"),
            }
        return await self._send(
            url=get_param(parameters, "url", "webhook_url"),
            method=get_param(parameters, "method", default=self.default_method),
            headers=get_param(parameters, "headers", default={}),
            params={},
            body=payload,
            timeout=float(get_param(parameters, "timeout", default=get_settings().HANDLER_HTTP_TIMEOUT_SECONDS)),
        )


# Export for handler registry
HTTP_HANDLER_TYPES = {
    "service_call": ServiceCallHandler,
    "call_webhook": WebhookHandler,
}
