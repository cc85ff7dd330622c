"""Request Dispatcher — one logical upstream operation across the key pool.

A bounded, credential-rotating retry:
  1. Walk the enabled ring starting at the pool cursor (local copy)
  2. Send with the selected credential
  3. Success (accepted by the caller) → credential health ok, return immediately
  4. 401/403 → invalid, 429 → rate_limited, other → error
  5. Retry on 401/403/429 only, and only with more than one enabled key
  6. Commit the local cursor once at the end, success or failure

There is no delay between attempts: the failure mode is "this key is bad",
not "the service is momentarily overloaded". Because the cursor is committed
even on failure, a bad credential is not immediately reused by the next,
unrelated request.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from prometheus_client import Counter

from studio.core.exceptions import NoUsableCredentialError, TransportError, UpstreamRequestError
from studio.gateway.key_pool import KeyPool
from studio.gateway.normalizer import describe_upstream_error, mask_key
from studio.gateway.types import KeyHealth, UpstreamResult, health_for_status, utcnow

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({401, 403, 429})

DISPATCH_ATTEMPTS = Counter(
    "upstream_dispatch_attempts_total",
    "Upstream dispatch attempts by outcome",
    ["outcome"],
)

SendFn = Callable[[str | None], Awaitable[UpstreamResult]]
AcceptFn = Callable[[UpstreamResult], None]


@dataclass(frozen=True)
class DispatchOutcome:
    """Successful dispatch: the upstream result and the credential that produced it."""

    result: UpstreamResult
    key_id: str | None
    attempts: int


class RequestDispatcher:
    """Submits one logical operation, rotating credentials on auth / rate-limit failures."""

    def __init__(self, pool: KeyPool):
        self.pool = pool

    async def dispatch(
        self,
        send: SendFn,
        *,
        allow_anonymous: bool = False,
        accept: AcceptFn | None = None,
    ) -> DispatchOutcome:
        """Run ``send`` with successive credentials until one succeeds.

        Args:
            send: Builds and issues the request for the given credential
                (None for an unauthenticated attempt).
            allow_anonymous: Permit one credential-less attempt when no key is
                enabled (the server-side fallback key is then used).
            accept: Validates a 2xx result before it counts as a success; an
                exception it raises propagates and leaves key health untouched.

        Raises:
            NoUsableCredentialError: empty pool and no anonymous attempt allowed
            UpstreamRequestError: last upstream failure once attempts stop
            TransportError: network failure, never retried
        """
        ring = self.pool.enabled
        if not ring and not allow_anonymous:
            raise NoUsableCredentialError()

        attempts = max(1, len(ring))
        rr = self.pool.cursor
        last_error: UpstreamRequestError | None = None

        try:
            for attempt in range(attempts):
                entry = ring[rr % len(ring)] if ring else None
                if entry is not None:
                    rr += 1

                try:
                    result = await send(entry.key if entry else None)
                except TransportError as e:
                    DISPATCH_ATTEMPTS.labels(outcome="transport_error").inc()
                    if entry is not None:
                        self.pool.set_health(
                            entry.id,
                            health=KeyHealth.ERROR,
                            last_checked_at=utcnow(),
                            last_error=e.message,
                        )
                    raise

                if result.ok:
                    if accept is not None:
                        try:
                            accept(result)
                        except Exception:
                            DISPATCH_ATTEMPTS.labels(outcome="rejected").inc()
                            raise
                    DISPATCH_ATTEMPTS.labels(outcome="success").inc()
                    if entry is not None:
                        self.pool.set_health(entry.id, health=KeyHealth.OK, last_error=None)
                    return DispatchOutcome(
                        result=result,
                        key_id=entry.id if entry else None,
                        attempts=attempt + 1,
                    )

                message = describe_upstream_error(result.data, result.status)
                last_error = UpstreamRequestError(message, result.status)
                health = health_for_status(result.status)
                DISPATCH_ATTEMPTS.labels(outcome=health.value).inc()

                if entry is not None:
                    self.pool.set_health(
                        entry.id,
                        health=health,
                        last_checked_at=utcnow(),
                        last_error=message,
                    )
                    logger.warning(
                        "Dispatch attempt %d/%d with key %s failed: HTTP %d (%s)",
                        attempt + 1,
                        attempts,
                        mask_key(entry.key),
                        result.status,
                        health.value,
                        extra={"key_id": entry.id, "attempt": attempt + 1},
                    )

                retryable = result.status in RETRYABLE_STATUSES and len(ring) > 1
                if not retryable:
                    raise last_error
        finally:
            self.pool.set_cursor(rr)

        # Every attempt was a retryable failure
        raise last_error
