"""Provider transports.

A transport is any async callable ``(endpoint, params, timeout_seconds) ->
result``. The coordinator owns retries, timeouts and rate limiting, so a
transport only performs one call and raises on failure. ``HttpTransport``
covers the common JSON-over-HTTP case and raises ``TransportError`` with the
HTTP status and ``Retry-After`` hint attached.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

import httpx

from diligence_gateway.core.errors import AuthenticationError, RateLimitError, TransportError
from diligence_gateway.core.errors.types import ErrorKind
from diligence_gateway.core.observability import redact_sensitive_data

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Callable performing one provider call."""

    async def __call__(self, endpoint: str, params: Dict[str, Any], timeout: float) -> Any: ...


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Numeric ``Retry-After`` header in seconds, or None.

    HTTP-date values are not supported and return None.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass
    return None


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort error text from a JSON or plain-text error body, redacted."""
    try:
        data = response.json()
    except ValueError:
        message = response.text[:200] or response.reason_phrase
    else:
        message = ""
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = str(error.get("message") or "")
            elif error:
                message = str(error)
            message = message or str(data.get("message") or data.get("Note") or "")
        message = message or response.reason_phrase
    return redact_sensitive_data(message)


class HttpTransport:
    """JSON-over-HTTP transport built on ``httpx.AsyncClient``.

    Endpoint names are mapped to URL paths (unmapped names are used as the
    path). The API key is sent as a header when ``api_key_header`` is set,
    otherwise as the ``api_key_param`` query parameter.

    Example:
        >>> polygon = HttpTransport(
        ...     "polygon",
        ...     "https://api.polygon.io",
        ...     endpoints={"quote": "/v2/last/trade/{symbol}"},
        ...     api_key=os.environ["POLYGON_API_KEY"],
        ...     api_key_param="apiKey",
        ... )
        >>> await polygon("quote", {"symbol": "IBM"}, 10.0)
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        endpoints: Optional[Mapping[str, str]] = None,
        method: str = "GET",
        api_key: Optional[str] = None,
        api_key_header: Optional[str] = None,
        api_key_param: Optional[str] = "apikey",
        headers: Optional[Mapping[str, str]] = None,
        health_endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider
        self.method = method.upper()
        self._endpoints = dict(endpoints or {})
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._api_key_param = api_key_param
        self._health_endpoint = health_endpoint
        self._owns_client = client is None

        default_headers = {"Accept": "application/json", **(headers or {})}
        if api_key and api_key_header:
            default_headers[api_key_header] = api_key
        if client is None:
            client = httpx.AsyncClient(base_url=base_url, headers=default_headers)
        else:
            client.headers.update(default_headers)
        self._client = client

    def _path_for(self, endpoint: str, params: Dict[str, Any]) -> tuple:
        """Resolve the URL path, consuming params used as path placeholders."""
        template = self._endpoints.get(endpoint, endpoint)
        remaining = dict(params)
        try:
            path = template.format(**params)
        except (KeyError, IndexError, ValueError):
            return template, remaining
        for name in params:
            if "{" + name + "}" in template:
                remaining.pop(name, None)
        return path, remaining

    async def __call__(self, endpoint: str, params: Dict[str, Any], timeout: float) -> Any:
        path, remaining = self._path_for(endpoint, params)
        query: Dict[str, Any] = {}
        body: Optional[Dict[str, Any]] = None
        if self.method == "GET":
            query.update(remaining)
        else:
            body = remaining
        if self._api_key and not self._api_key_header and self._api_key_param:
            query[self._api_key_param] = self._api_key

        try:
            response = await self._client.request(
                self.method, path, params=query or None, json=body, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                self.provider,
                f"Request to {endpoint} timed out",
                kind=ErrorKind.TIMEOUT,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                self.provider,
                f"Network error calling {endpoint}: {redact_sensitive_data(str(e))}",
                kind=ErrorKind.NETWORK_ERROR,
                original_error=e,
            ) from e

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> Any:
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                self.provider, message=extract_error_message(response), status_code=status
            )
        if status == 429:
            raise RateLimitError(self.provider, retry_after=parse_retry_after(response))
        if status >= 400:
            raise TransportError(
                self.provider,
                f"API error {status}: {extract_error_message(response)}",
                status_code=status,
                retry_after=parse_retry_after(response),
            )

        try:
            return response.json()
        except ValueError:
            return response.text

    async def health_check(self) -> bool:
        """GET the health endpoint; True for any non-5xx answer.

        Without a health endpoint the transport reports healthy.
        """
        if self._health_endpoint is None:
            return True
        try:
            response = await self._client.get(self._health_endpoint, timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning(f"Health check for {self.provider} failed: {e}")
            return False
        return response.status_code < 500

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
