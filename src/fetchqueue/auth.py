"""Credential state and the strategies that acquire credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

if TYPE_CHECKING:
    from fetchqueue.exceptions import HttpError
    from fetchqueue.types import ErrorContext

GenerateStrategy = Callable[[], Awaitable[None]]
TokenStrategy = Callable[[Mapping[str, Any] | None], Awaitable[None]]
ErrorHook = Callable[["HttpError", "ErrorContext"], Awaitable[Any]]


class PendingMode(IntEnum):
    """Which credential operation, if any, is in flight."""

    NONE = 0
    # renew of a still-usable access token; callers keep going
    ASYNC = 1
    # refresh or generate because the access token is gone; callers wait
    SYNC = 2


@dataclass
class CredentialRecord:
    """One token and its validity window.

    ``expires_at`` is an epoch timestamp in seconds, ``0`` meaning absent.
    ``delay`` is the token's lifetime as issued, so ``expires_at - delay``
    is when it was created.
    """

    token: str | None = field(default=None, repr=False)
    delay: float = 0.0
    expires_at: float = 0.0

    @property
    def created_at(self) -> float:
        return self.expires_at - self.delay

    def is_valid(self, now: float) -> bool:
        # An expired record is invalid whatever its token says.
        return self.expires_at > now

    def store(self, token: str | None, expires_at: float, delay: float = 0.0) -> None:
        self.token = token
        self.expires_at = expires_at
        self.delay = delay

    def reset(self) -> None:
        self.token = None
        self.delay = 0.0
        self.expires_at = 0.0


@dataclass
class CredentialConfig:
    """The embedder's capability set.

    Every strategy is optional. ``generate`` acquires a token set from
    scratch and is only usable while ``connected`` is true; ``renew``
    replaces the access token using the refresh token; ``refresh``
    re-establishes the refresh token itself. Strategies are expected to
    update the coordinator's ``access``/``refresh`` records before returning.

    ``handle_errors`` is called with every error about to reach a caller.
    It is for side effects only and cannot suppress the error.
    """

    generate: GenerateStrategy | None = None
    renew: TokenStrategy | None = None
    refresh: TokenStrategy | None = None
    handle_errors: ErrorHook | None = None
    connected: bool = True

    @property
    def can_generate(self) -> bool:
        return self.generate is not None

    @property
    def can_renew(self) -> bool:
        return self.renew is not None

    @property
    def can_refresh(self) -> bool:
        return self.refresh is not None
