"""
Data Pipeline - Motion Telemetry
=================================
Sinks for (elapsed_time, pulse_position[, encoder_position]) samples
streamed by the motion layer while the motor is busy.

Responsibilities:
- Tab-separated telemetry files, one row per poll sample
- In-memory buffering for tests and live display
- Summary statistics over a recorded motion
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union

import numpy as np
from loguru import logger


@dataclass(frozen=True)
class TelemetrySample:
    """One poll sample taken while the stage was moving."""
    elapsed_s: float
    pulse_position: int
    encoder_position: Optional[int] = None

    def to_row(self) -> str:
        """Format as a tab-separated line."""
        fields = [repr(float(self.elapsed_s)), str(self.pulse_position)]
        if self.encoder_position is not None:
            fields.append(str(self.encoder_position))
        return "\t".join(fields) + "\n"

    @classmethod
    def from_row(cls, line: str) -> TelemetrySample:
        parts = line.split("\t")
        encoder = int(parts[2]) if len(parts) > 2 and parts[2].strip() else None
        return cls(float(parts[0]), int(parts[1]), encoder)


class TelemetrySink:
    """
    Base telemetry sink.

    Subclasses override record(); flush() and close() are optional.
    """

    def record(self, sample: TelemetrySample) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.flush()

    def __enter__(self) -> TelemetrySink:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TabSeparatedTelemetryWriter(TelemetrySink):
    """
    Writes samples as ``elapsed \\t pulse [\\t encoder]`` rows.

    Usage:
        with TabSeparatedTelemetryWriter("RunOutput.dat") as sink:
            move_cycle_get_time(controller, 2000, sink=sink)
    """

    def __init__(self, filepath: Union[str, Path], append: bool = False):
        """
        Initialize writer.

        Args:
            filepath: Output file path
            append: Append to an existing file instead of truncating it
        """
        self.filepath = Path(filepath)
        self._file: Optional[TextIO] = open(self.filepath, "a" if append else "w")
        self._rows = 0
        logger.info(f"Recording telemetry to {self.filepath}")

    @property
    def rows_written(self) -> int:
        return self._rows

    def record(self, sample: TelemetrySample) -> None:
        if self._file is None:
            raise ValueError(f"telemetry file {self.filepath} is closed")
        self._file.write(sample.to_row())
        self._rows += 1

    def flush(self) -> None:
        if self._file is not None:
            self._file.flush()

    def close(self) -> None:
        """Flush and close; never raises."""
        if self._file is None:
            return
        try:
            self._file.flush()
            self._file.close()
        except OSError as e:
            logger.error(f"Couldn't close telemetry file {self.filepath}: {e}")
        finally:
            self._file = None
        logger.info(f"Wrote {self._rows} telemetry rows to {self.filepath}")


class MemoryTelemetrySink(TelemetrySink):
    """Keeps the most recent samples in memory."""

    def __init__(self, buffer_size: int = 100000):
        self._samples: deque = deque(maxlen=buffer_size)
        self.flush_count = 0

    def record(self, sample: TelemetrySample) -> None:
        self._samples.append(sample)

    def flush(self) -> None:
        self.flush_count += 1

    @property
    def samples(self) -> List[TelemetrySample]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def as_arrays(self) -> Dict[str, np.ndarray]:
        """
        Samples as numpy arrays keyed by column.

        ``encoder_position`` is only present when at least one sample has
        an encoder reading; samples without one hold NaN.
        """
        samples = self.samples
        arrays = {
            "elapsed_s": np.array([s.elapsed_s for s in samples], dtype=float),
            "pulse_position": np.array([s.pulse_position for s in samples], dtype=np.int64),
        }
        if any(s.encoder_position is not None for s in samples):
            arrays["encoder_position"] = np.array(
                [np.nan if s.encoder_position is None else s.encoder_position for s in samples],
                dtype=float,
            )
        return arrays

    def summary(self) -> Dict[str, Any]:
        """Sample count, time span and pulse range."""
        if not self._samples:
            return {"sample_count": 0}
        arrays = self.as_arrays()
        elapsed = arrays["elapsed_s"]
        pulses = arrays["pulse_position"]
        duration = float(elapsed[-1] - elapsed[0])
        return {
            "sample_count": len(elapsed),
            "duration_s": duration,
            "sample_rate_hz": (len(elapsed) - 1) / duration if duration > 0 else 0.0,
            "min_pulse": int(np.min(pulses)),
            "max_pulse": int(np.max(pulses)),
        }


def read_telemetry_file(filepath: Union[str, Path]) -> List[TelemetrySample]:
    """Load samples written by TabSeparatedTelemetryWriter."""
    with open(filepath, "r") as f:
        return [TelemetrySample.from_row(line) for line in f if line.strip()]
