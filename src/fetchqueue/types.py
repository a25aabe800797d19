"""Request options and response models shared by the transport and the queue."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class RequestOptions:
    """Per-call options. Any field left as ``None`` falls back to the client defaults."""

    base_url: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None
    query: dict[str, Any] | None = None
    body: Any = None
    form: dict[str, Any] | None = None
    json: Any = None
    timeout: float | None = None
    # Not sent on the wire; carried along for error hooks and strategies.
    extra: dict[str, Any] | None = None

    def merged(self, other: RequestOptions | None) -> RequestOptions:
        """Return a copy with *other*'s set fields layered on top of these.

        Headers are combined key by key rather than replaced wholesale.
        """
        if other is None:
            return replace(self)
        values: dict[str, Any] = {}
        for f in fields(self):
            mine, theirs = getattr(self, f.name), getattr(other, f.name)
            values[f.name] = mine if theirs is None else theirs
        if self.headers and other.headers:
            values["headers"] = {**self.headers, **other.headers}
        return RequestOptions(**values)

    def with_header(self, name: str, value: str) -> RequestOptions:
        """Return a copy with one header set, leaving every other header untouched."""
        return replace(self, headers={**(self.headers or {}), name: value})


@dataclass
class ErrorContext:
    """The call an error belongs to, as handed to ``handle_errors`` hooks."""

    url: str
    options: RequestOptions = field(default_factory=RequestOptions)


class HttpResponse(BaseModel):
    """A successful (2xx) HTTP exchange with its body already parsed."""

    status: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class TokenGrant(BaseModel):
    """An OAuth-style token endpoint response.

    Lifetimes are in seconds. ``issued_delay`` is how old the access token
    already was when it reached us, if the server reports it.
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: float = Field(gt=0)
    refresh_token: str | None = None
    refresh_expires_in: float | None = Field(default=None, gt=0)
    issued_delay: float = Field(default=0.0, ge=0.0)
