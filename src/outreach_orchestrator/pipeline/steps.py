"""Named, memoized, retried job steps.

A step's successful result is stored under ``(job_id, step)`` so a re-run of
the same job returns it instead of repeating the effect. Read-only gate
steps run with ``memoize=False`` so they always see fresh data.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import StepFailed, TransientError
from outreach_orchestrator.core.storage import Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientError):
        return exc.retryable
    return isinstance(exc, (OSError, TimeoutError))


class StepRunner:
    def __init__(
        self,
        db: Storage,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings or Settings()
        self._sleep = sleep

    async def run(
        self,
        job_id: str,
        step: str,
        fn: Callable[[], Awaitable[T]],
        model: type[BaseModel] | None = None,
        memoize: bool = True,
    ) -> T:
        """Run ``fn`` as step ``step`` of job ``job_id``.

        Transient failures are retried with exponential backoff; exhaustion
        raises StepFailed. Any other exception propagates unchanged.
        """
        if memoize:
            found, stored = await self.db.get_step_result(job_id, step)
            if found:
                logger.debug("Step %s/%s already done, reusing result", job_id, step)
                if model is not None and stored is not None:
                    return model.model_validate(stored)  # type: ignore[return-value]
                return stored

        max_retries = self.settings.step_max_retries
        failures = 0
        while True:
            try:
                result = await fn()
                break
            except Exception as e:
                if not is_transient(e):
                    raise
                failures += 1
                if failures > max_retries:
                    logger.error(
                        "Step %s/%s failed after %d attempts: %s", job_id, step, failures, e
                    )
                    raise StepFailed(job_id, step, f"{type(e).__name__}: {e}") from e
                delay = self.settings.step_backoff_seconds * (2 ** (failures - 1))
                logger.warning(
                    "Step %s/%s transient failure (%s), retry %d/%d in %.1fs",
                    job_id, step, e, failures, max_retries, delay,
                )
                await self._sleep(delay)

        if memoize:
            value = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
            await self.db.save_step_result(job_id, step, value)
        return result
