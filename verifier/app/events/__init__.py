from .models import VerificationEvent
from .emitter import (
    LoggingEventEmitter,
    NullEventEmitter,
    VerificationEventEmitter,
)

__all__ = [
    "VerificationEvent",
    "VerificationEventEmitter",
    "NullEventEmitter",
    "LoggingEventEmitter",
]
