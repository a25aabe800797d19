"""Credential-aware dispatch on top of :class:`~fetchqueue.client.Fetch`.

At most one credential operation (generate, renew or refresh) runs at a
time. Calls that arrive while the access token is unusable wait in a FIFO
queue and are released, in arrival order, once the operation settles.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Mapping

import httpx

from fetchqueue.auth import (
    CredentialConfig,
    CredentialRecord,
    GenerateStrategy,
    PendingMode,
    TokenStrategy,
)
from fetchqueue.client import Fetch
from fetchqueue.exceptions import CredentialUnavailableError, HttpError
from fetchqueue.types import ErrorContext, HttpResponse, RequestOptions, TokenGrant

logger = logging.getLogger(__name__)

RENEW_AFTER_SECONDS = 15 * 60


@dataclass
class QueuedCall:
    """A caller parked until the current credential operation settles."""

    sequence: int
    url: str
    waiter: asyncio.Future[None] = field(repr=False)


class FetchQueue(Fetch):
    """Async HTTP client that keeps a bearer token fresh while calls are in flight.

    Usage::

        async def refresh(extra=None):
            grant = await obtain_tokens_somehow()
            api.apply_grant(grant)

        api = FetchQueue(
            RequestOptions(base_url="https://api.example.com"),
            CredentialConfig(refresh=refresh),
        )
        api.refresh_store.store(stored_refresh_token, expires_at=...)
        resp = await api.get("/v1/me")

    A call proceeds at once while the access token is valid. When the token
    is older than ``renew_after`` seconds a ``renew`` runs in the background
    and calls keep using the old token meanwhile. When the token is gone,
    ``refresh`` (or failing that, ``generate``) runs and calls queue behind it.
    """

    def __init__(
        self,
        options: RequestOptions | None = None,
        config: CredentialConfig | None = None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        max_queue_cycles: int = 3,
        renew_after: float = RENEW_AFTER_SECONDS,
    ) -> None:
        super().__init__(options, config, timeout=timeout, transport=transport)
        self.access_store = CredentialRecord()
        self.refresh_store = CredentialRecord()
        self.pending = PendingMode.NONE
        self._queue: deque[QueuedCall] = deque()
        self._sequence = itertools.count()
        self._operation: asyncio.Task[None] | None = None
        self._clock = clock
        self._max_queue_cycles = max_queue_cycles
        self._renew_after = renew_after

    @property
    def queued(self) -> int:
        """Number of calls currently waiting for credentials."""
        return len(self._queue)

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Credential state
    # ------------------------------------------------------------------

    def access_valid(self, now: float) -> bool:
        return self.access_store.is_valid(now)

    def refresh_valid(self, now: float) -> bool:
        return self.config.can_refresh and self.refresh_store.is_valid(now)

    def generate_valid(self) -> bool:
        return self.config.can_generate and self.config.connected

    def renew_due(self, now: float) -> bool:
        """True when the access token was issued more than ``renew_after`` seconds ago."""
        return self.config.can_renew and self.access_store.created_at < now - self._renew_after

    def reset_access(self) -> None:
        self.access_store.reset()

    def reset_refresh(self) -> None:
        self.refresh_store.reset()

    def apply_grant(self, grant: TokenGrant) -> None:
        """Store a token endpoint response in the access and refresh records."""
        now = self.now()
        self.access_store.store(
            grant.access_token,
            expires_at=now + grant.expires_in,
            delay=grant.expires_in + grant.issued_delay,
        )
        if grant.refresh_token is not None and grant.refresh_expires_in is not None:
            self.refresh_store.store(
                grant.refresh_token,
                expires_at=now + grant.refresh_expires_in,
                delay=grant.refresh_expires_in,
            )

    # ------------------------------------------------------------------
    # Credential operations
    # ------------------------------------------------------------------

    async def generate(self) -> None:
        """Acquire a brand-new token set, then release queued calls."""
        generate = self.config.generate
        if generate is None:
            return
        self.pending = PendingMode.SYNC
        try:
            await self._generate(generate)
        finally:
            self._settle()

    async def renew(self, extra: Mapping[str, Any] | None = None) -> None:
        """Replace the access token, falling back to refresh then generate."""
        renew = self.config.renew
        if renew is None:
            return
        self.pending = PendingMode.ASYNC
        try:
            await self._renew(renew, extra)
        finally:
            self._settle()

    async def refresh(self, extra: Mapping[str, Any] | None = None) -> None:
        """Re-establish the refresh token, falling back to generate."""
        refresh = self.config.refresh
        if refresh is None:
            return
        self.pending = PendingMode.SYNC
        try:
            await self._refresh(refresh, extra)
        finally:
            self._settle()

    async def _generate(self, generate: GenerateStrategy) -> None:
        logger.info("generating credentials")
        try:
            await generate()
        except Exception:
            # No point generating again until the embedder reconnects.
            self.config.connected = False
            raise
        logger.info("credentials generated")

    async def _renew(self, renew: TokenStrategy, extra: Mapping[str, Any] | None) -> None:
        logger.info("renewing access token")
        try:
            await renew(extra)
        except Exception as exc:
            logger.warning("access token renewal failed: %s", exc)
            self.reset_access()
            refresh = self.config.refresh
            if refresh is not None and self.refresh_valid(self.now()):
                await self._fallback(exc, self._refresh(refresh, None))
                return
            self.reset_refresh()
            generate = self.config.generate
            if generate is not None and self.generate_valid():
                await self._fallback(exc, self._generate(generate))
                return
            raise
        logger.info("access token renewed")

    async def _refresh(self, refresh: TokenStrategy, extra: Mapping[str, Any] | None) -> None:
        logger.info("refreshing credentials")
        try:
            await refresh(extra)
        except Exception as exc:
            logger.warning("credential refresh failed: %s", exc)
            self.reset_refresh()
            generate = self.config.generate
            if generate is not None and self.generate_valid():
                await self._fallback(exc, self._generate(generate))
                return
            raise
        logger.info("credentials refreshed")

    async def _fallback(self, cause: Exception, operation: Awaitable[None]) -> None:
        """Run the next operation in the chain; if it fails too, *cause* is what surfaces."""
        self.pending = PendingMode.SYNC
        try:
            await operation
        except Exception:
            raise cause

    def _settle(self) -> None:
        self.pending = PendingMode.NONE
        self.run_queue()

    def _start(self, mode: PendingMode, operation: Coroutine[Any, Any, None], name: str) -> None:
        """Launch a credential operation in the background.

        ``pending`` is set here, in the caller's step, so nobody else can
        start a second operation before the task first runs.
        """
        started = False

        async def run() -> None:
            nonlocal started
            started = True
            await operation

        self.pending = mode
        self._operation = asyncio.create_task(run())
        self._operation.add_done_callback(lambda task: self._operation_done(task, name, operation, started))

    def _operation_done(
        self, task: asyncio.Task[None], name: str, operation: Coroutine[Any, Any, None], started: bool
    ) -> None:
        if task is self._operation:
            self._operation = None
        if task.cancelled():
            logger.warning("background %s was cancelled", name)
            if not started:
                # The operation's own finally never ran, so settle here.
                operation.close()
                self._settle()
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background %s failed: %s", name, exc)

    async def close(self) -> None:
        """Stop any credential operation and queued calls, then close the HTTP client."""
        while self._queue:
            self._queue.popleft().waiter.cancel()
        operation = self._operation
        try:
            if operation is not None and not operation.done():
                operation.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await operation
        finally:
            await super().close()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def is_queue(self) -> bool:
        """Decide whether a new call must wait; may start a credential operation.

        Deliberately synchronous: checking and setting ``pending`` happen in
        one step of the event loop.
        """
        if self.pending == PendingMode.SYNC:
            return True

        now = self.now()

        if self.access_valid(now):
            if self.renew_due(now) and self.pending == PendingMode.NONE:
                self._start(PendingMode.ASYNC, self.renew(), "renew")
            return False

        self.reset_access()

        if self.refresh_valid(now):
            if self.pending == PendingMode.NONE:
                self._start(PendingMode.SYNC, self.refresh(), "refresh")
            self.pending = PendingMode.SYNC
            return True

        self.reset_refresh()

        if self.generate_valid():
            if self.pending == PendingMode.NONE:
                self._start(PendingMode.SYNC, self.generate(), "generate")
            self.pending = PendingMode.SYNC
            return True

        # Nothing can produce a token: let everyone through and fail downstream.
        self.run_queue()
        return False

    def run_queue(self) -> None:
        """Release every queued call in arrival order.

        Released calls re-run admission when they resume; nothing here waits
        for them to finish.
        """
        if self._queue:
            logger.debug("releasing %d queued call(s)", len(self._queue))
        while self._queue:
            call = self._queue.popleft()
            if not call.waiter.done():
                call.waiter.set_result(None)

    async def _wait_in_queue(self, url: str) -> None:
        loop = asyncio.get_running_loop()
        call = QueuedCall(sequence=next(self._sequence), url=url, waiter=loop.create_future())
        self._queue.append(call)
        logger.debug("queued call #%d to %s behind %s", call.sequence, url, self.pending.name)
        await call.waiter

    async def _admit(self, url: str) -> None:
        cycles = 0
        while self.is_queue():
            if cycles >= self._max_queue_cycles:
                logger.warning("giving up on %s after %d queue cycles", url, cycles)
                raise CredentialUnavailableError(f"No credentials available after {cycles} attempts")
            await self._wait_in_queue(url)
            cycles += 1

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def send(self, url: str, options: RequestOptions | None = None) -> HttpResponse:
        """Send a request with the current access token, waiting for one if needed.

        A 401 resets the access token and, when a refresh or generate can
        replace it, the call is retried once. Every error that reaches the
        caller passes through :meth:`handle_errors` first.
        """
        options = options or RequestOptions()
        retried = False
        while True:
            try:
                await self._admit(url)
                return await self._request(url, self._authorize(options))
            except HttpError as exc:
                if exc.status == 401 and not isinstance(exc, CredentialUnavailableError):
                    self.reset_access()
                    if not retried and self._recoverable():
                        logger.debug("401 from %s, retrying with new credentials", url)
                        retried = True
                        continue
                await self.handle_errors(exc, ErrorContext(url=url, options=options))
                raise

    def _authorize(self, options: RequestOptions) -> RequestOptions:
        if self.access_store.token:
            return options.with_header("Authorization", f"Bearer {self.access_store.token}")
        return options

    def _recoverable(self) -> bool:
        return self.refresh_valid(self.now()) or self.generate_valid()
