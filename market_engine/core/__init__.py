"""Core infrastructure modules for the market engine."""

from .config import EngineConfig, InstrumentSpec, MarketHours, load_config
from .errors import InvalidTransitionError, MarketEngineError, TransportError, UnknownInstrumentError
from .events import (
    ConnectionStatusEvent,
    DiagnosticEvent,
    EventBus,
    EventSubscription,
    EventTopic,
    ModeChangeEvent,
)
from .telemetry import (
    EventBusTelemetrySink,
    FileTelemetrySink,
    LogTelemetrySink,
    TelemetryReporter,
    TelemetrySink,
    build_telemetry_reporter,
)

__all__ = [
    "EngineConfig",
    "InstrumentSpec",
    "MarketHours",
    "load_config",
    "MarketEngineError",
    "UnknownInstrumentError",
    "InvalidTransitionError",
    "TransportError",
    "EventBus",
    "EventTopic",
    "EventSubscription",
    "ConnectionStatusEvent",
    "ModeChangeEvent",
    "DiagnosticEvent",
    "TelemetrySink",
    "TelemetryReporter",
    "LogTelemetrySink",
    "EventBusTelemetrySink",
    "FileTelemetrySink",
    "build_telemetry_reporter",
]
