from __future__ import annotations

import logging
from typing import Protocol

from verifier.app.events.models import VerificationEvent


class VerificationEventEmitter(Protocol):
    """
    Interface for broadcasting verification state transitions.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not crash the pipeline)
    - observational only
    """

    async def emit(self, event: VerificationEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when no observer is attached, and in tests that do not care
    about events.
    """

    async def emit(self, event: VerificationEvent) -> None:
        return


class LoggingEventEmitter:
    """
    Writes each transition to the ``verifier.events`` logger.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("verifier.events")

    async def emit(self, event: VerificationEvent) -> None:
        try:
            self._logger.info(
                "verification_state_changed",
                extra={
                    "trace_id": event.verification_id,
                    "state": event.state.value,
                    "details": event.details or {},
                },
            )
        except Exception:
            # Fail-safe: never let observability break the pipeline
            return
