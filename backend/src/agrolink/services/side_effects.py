"""Best-effort side effects executed after the authoritative commit.

Email, notification rows and realtime pushes may fail independently of the
state change that triggered them. They are run through ``run_best_effort``,
which returns a ``SideEffectResult`` instead of raising.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SideEffectResult:
    """Result of one best-effort side effect.

    Callers check ``result.ok``; a failure has already been logged.
    """

    name: str
    ok: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, name: str, data: Any = None) -> "SideEffectResult":
        return cls(name=name, ok=True, data=data)

    @classmethod
    def failure(cls, name: str, error: str) -> "SideEffectResult":
        return cls(name=name, ok=False, error=error)


async def run_best_effort(name: str, awaitable: Awaitable) -> SideEffectResult:
    """Await ``awaitable`` and convert any exception into a failed result.

    A coroutine returning ``False`` (e.g. a mail send that was skipped) also
    counts as a failure.
    """
    try:
        data = await awaitable
    except Exception as exc:
        logger.warning("Side effect %s failed: %s", name, exc, exc_info=True)
        return SideEffectResult.failure(name, str(exc) or exc.__class__.__name__)
    if data is False:
        logger.info("Side effect %s did not complete", name)
        return SideEffectResult.failure(name, "not sent")
    return SideEffectResult.success(name, data)
