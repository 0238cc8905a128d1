"""Retry-with-backoff middleware composed around a ProviderClient.

Rate-limit responses, 5xx responses and network failures are retried with
exponential backoff and full jitter (Retry-After is honoured for 429).
Not-found, auth and other 4xx errors propagate on the first attempt.
Before a create call is retried, or given up on, the environment tag is
checked for a droplet the failed call may already have created.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from toolbox_control.errors import (
    ProviderError,
    ProviderRateLimitedError,
    ProviderUnexpectedError,
)
from toolbox_control.models import CreateInstanceRequest, ProviderInstance
from toolbox_control.protocols import ProviderClient
from toolbox_control.providers.digitalocean import environment_id_from_tags, environment_tag

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Full-jitter delay before retry number ``attempt`` (0-based)."""
        cap = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        return (rng or random).uniform(0, cap)


def is_retryable(exc: ProviderError) -> bool:
    if isinstance(exc, ProviderRateLimitedError):
        return True
    if isinstance(exc, ProviderUnexpectedError):
        return exc.is_transient
    return False


class RetryingProviderClient:
    """ProviderClient decorator adding bounded retries to every call."""

    def __init__(
        self,
        inner: ProviderClient,
        policy: BackoffPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._inner = inner
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._rng = rng

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        recover: Callable[[ProviderError], Awaitable[T | None]] | None = None,
    ) -> T:
        attempts = max(self._policy.max_attempts, 1)
        for attempt in range(attempts):
            try:
                return await fn()
            except ProviderError as exc:
                if not is_retryable(exc):
                    raise
                last = attempt + 1 >= attempts
                if not last:
                    delay = self._policy.delay_for(attempt, self._rng)
                    if isinstance(exc, ProviderRateLimitedError) and exc.retry_after is not None:
                        delay = min(exc.retry_after, self._policy.max_delay)
                    logger.warning(
                        "Provider %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        operation,
                        attempt + 1,
                        attempts,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                if recover is not None:
                    recovered = await recover(exc)
                    if recovered is not None:
                        return recovered
                if last:
                    raise
        raise AssertionError("unreachable")

    async def _find_created(
        self, request: CreateInstanceRequest, exc: ProviderError,
    ) -> ProviderInstance | None:
        """Look up an instance a failed create may still have produced.

        A 429 means the request was rejected. Timeouts and 5xx responses may
        have created the droplet, so it is looked up by its environment tag
        and name before posting again.
        """
        if isinstance(exc, ProviderRateLimitedError):
            return None
        environment_id = environment_id_from_tags(request.tags)
        if environment_id is None:
            raise exc
        try:
            existing = await self._inner.list_instances_by_tag(environment_tag(environment_id))
        except ProviderError as lookup_exc:
            logger.error(
                "Cannot tell whether %s was created, not retrying: %s",
                request.name,
                lookup_exc,
            )
            raise exc from lookup_exc
        for instance in existing:
            if instance.name == request.name:
                logger.warning(
                    "Adopting instance %s created by a failed create call",
                    instance.provider_id,
                    extra={"provider_instance_id": instance.provider_id},
                )
                return instance
        return None

    async def create_instance(self, request: CreateInstanceRequest) -> ProviderInstance:
        return await self._call(
            "create_instance",
            lambda: self._inner.create_instance(request),
            recover=lambda exc: self._find_created(request, exc),
        )

    async def get_instance(self, provider_id: str) -> ProviderInstance:
        return await self._call(
            "get_instance", lambda: self._inner.get_instance(provider_id)
        )

    async def delete_instance(self, provider_id: str) -> None:
        await self._call(
            "delete_instance", lambda: self._inner.delete_instance(provider_id)
        )

    async def list_instances_by_tag(self, tag: str) -> list[ProviderInstance]:
        return await self._call(
            "list_instances_by_tag", lambda: self._inner.list_instances_by_tag(tag)
        )
