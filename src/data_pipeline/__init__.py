"""
Data Pipeline Package
======================
Motion telemetry recording and export.
"""

from .telemetry import (
    TelemetrySample,
    TelemetrySink,
    TabSeparatedTelemetryWriter,
    MemoryTelemetrySink,
    read_telemetry_file,
)

__all__ = [
    "TelemetrySample",
    "TelemetrySink",
    "TabSeparatedTelemetryWriter",
    "MemoryTelemetrySink",
    "read_telemetry_file",
]
