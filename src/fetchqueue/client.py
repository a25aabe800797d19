"""Fetch: a thin async HTTP transport with typed errors."""

from __future__ import annotations

import json as jsonlib
import logging
import re
from typing import Any

import httpx

from fetchqueue.auth import CredentialConfig
from fetchqueue.exceptions import HttpError, NetworkError, error_for_status
from fetchqueue.types import ErrorContext, HttpResponse, RequestOptions

logger = logging.getLogger(__name__)

_JSON_TYPE = re.compile(r"application/json")
_BINARY_TYPE = re.compile(r"application/pdf|image/")


# ---------------------------------------------------------------------------
# Shared request/response helpers (pure functions, no I/O)
# ---------------------------------------------------------------------------


def _build_url(url: str, base_url: str | None) -> httpx.URL:
    if base_url:
        return httpx.URL(base_url).join(url)
    return httpx.URL(url)


def _build_query(query: dict[str, Any] | None) -> list[tuple[str, str]]:
    """Flatten query data; sequences expand to ``key[0]``, ``key[1]``, ..."""
    params: list[tuple[str, str]] = []
    for key, value in (query or {}).items():
        if isinstance(value, (list, tuple)):
            params.extend((f"{key}[{index}]", _query_value(item)) for index, item in enumerate(value))
        elif value is not None:
            params.append((key, _query_value(value)))
    return params


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split_form(form: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate plain fields from file-like ones; files force a multipart body."""
    data: dict[str, Any] = {}
    files: dict[str, Any] = {}
    for key, value in form.items():
        if isinstance(value, (bytes, bytearray, tuple)) or hasattr(value, "read"):
            files[key] = value
        else:
            data[key] = value
    return data, files


def _build_request_kwargs(options: RequestOptions) -> dict[str, Any]:
    headers = dict(options.headers or {})
    kwargs: dict[str, Any] = {}
    if options.json is not None:
        headers["Content-Type"] = "application/json"
        kwargs["content"] = jsonlib.dumps(options.json).encode()
    elif options.form is not None:
        data, files = _split_form(options.form)
        kwargs["data"] = data
        if files:
            kwargs["files"] = files
    elif options.body is not None:
        kwargs["content"] = options.body
    kwargs["headers"] = headers
    kwargs["params"] = _build_query(options.query)
    if options.timeout is not None:
        kwargs["timeout"] = options.timeout
    return kwargs


def _parse_body(resp: httpx.Response) -> Any:
    """Decode the body according to its Content-Type."""
    if not resp.content:
        return None
    content_type = resp.headers.get("Content-Type", "")
    if _JSON_TYPE.search(content_type):
        try:
            return resp.json()
        except ValueError as exc:
            # A broken error body still carries its status; a broken success body is unusable.
            if resp.is_success:
                raise NetworkError("fetch", "Malformed JSON in response body") from exc
            return resp.text
    if _BINARY_TYPE.search(content_type):
        return resp.content
    return resp.text


def _handle_response(resp: httpx.Response) -> HttpResponse:
    """Wrap 2xx responses; map every other status to a typed exception."""
    body = _parse_body(resp)
    if resp.is_success:
        return HttpResponse(status=resp.status_code, body=body, headers=dict(resp.headers))
    raise error_for_status(resp.status_code, body)


def _network_error(exc: httpx.TransportError) -> NetworkError:
    reason = "offline" if isinstance(exc, httpx.ConnectError) else "fetch"
    return NetworkError(reason, f"Network error ({reason}): {exc}")


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class Fetch:
    """Async HTTP transport: one exchange per call, no credential state.

    Usage::

        async with Fetch(RequestOptions(base_url="https://api.example.com")) as api:
            resp = await api.get("/v1/items", {"tag": ["a", "b"]})
            print(resp.status, resp.body)

    Failures raise :class:`~fetchqueue.exceptions.HttpError` subclasses
    carrying ``status`` and the parsed error body as ``data``.
    """

    def __init__(
        self,
        options: RequestOptions | None = None,
        config: CredentialConfig | None = None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.options = options or RequestOptions()
        self.config = config or CredentialConfig()
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> Fetch:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def send(self, url: str, options: RequestOptions | None = None) -> HttpResponse:
        """Perform one request; errors go through :meth:`handle_errors` and are re-raised."""
        options = options or RequestOptions()
        try:
            return await self._request(url, options)
        except HttpError as exc:
            await self.handle_errors(exc, ErrorContext(url=url, options=options))
            raise

    async def handle_errors(self, error: HttpError, ctx: ErrorContext) -> None:
        """Give the configured error hook a look at *error* before it is raised."""
        logger.debug("%s %s failed with %s", ctx.options.method or "GET", ctx.url, error.status)
        if self.config.handle_errors is not None:
            await self.config.handle_errors(error, ctx)

    async def _request(self, url: str, options: RequestOptions) -> HttpResponse:
        merged = self.options.merged(options)
        method = (merged.method or "GET").upper()
        target = _build_url(url, merged.base_url)
        logger.debug("%s %s", method, target)
        try:
            resp = await self._client.request(method, target, **_build_request_kwargs(merged))
        except httpx.TransportError as exc:
            raise _network_error(exc) from exc
        return _handle_response(resp)

    # --- Helpers ---

    async def get(
        self, url: str = "/", data: dict[str, Any] | None = None, options: RequestOptions | None = None
    ) -> HttpResponse:
        return await self.send(url, _with_method(options, "GET", query=data))

    async def delete(
        self, url: str = "/", data: dict[str, Any] | None = None, options: RequestOptions | None = None
    ) -> HttpResponse:
        return await self.send(url, _with_method(options, "DELETE", query=data))

    async def post(self, url: str = "/", data: Any = None, options: RequestOptions | None = None) -> HttpResponse:
        return await self.send(url, _with_method(options, "POST", json=data))

    async def put(self, url: str = "/", data: Any = None, options: RequestOptions | None = None) -> HttpResponse:
        return await self.send(url, _with_method(options, "PUT", json=data))

    async def patch(self, url: str = "/", data: Any = None, options: RequestOptions | None = None) -> HttpResponse:
        return await self.send(url, _with_method(options, "PATCH", json=data))

    async def form(
        self, url: str = "/", data: dict[str, Any] | None = None, options: RequestOptions | None = None
    ) -> HttpResponse:
        """POST *data* as form fields."""
        return await self.send(url, _with_method(options, "POST", form=data))


def _with_method(options: RequestOptions | None, method: str, **payload: Any) -> RequestOptions:
    base = options or RequestOptions()
    return base.merged(RequestOptions(method=method, **payload))
