from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass(slots=True)
class TelemetryStream:
    """One IMU stream as parallel arrays.

    Attributes:
        timestamp_ms (np.ndarray): N sample times in milliseconds
            (IMU clock).
        measurement (np.ndarray): Nx3 readings, m/s^2 or rad/s.
    """

    timestamp_ms: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.float64)
    )
    measurement: np.ndarray = field(
        default_factory=lambda: np.zeros((0, 3), dtype=np.float64)
    )

    def __post_init__(self):
        self.timestamp_ms = np.asarray(
            self.timestamp_ms, dtype=np.float64
        ).reshape(-1)
        self.measurement = np.asarray(
            self.measurement, dtype=np.float64
        ).reshape(-1, 3)
        if len(self.timestamp_ms) != len(self.measurement):
            raise ValueError(
                f"Telemetry has {len(self.timestamp_ms)} timestamps "
                f"but {len(self.measurement)} measurements"
            )

    def __len__(self) -> int:
        return len(self.timestamp_ms)

    def timestamps_s(self) -> np.ndarray:
        return self.timestamp_ms * 1e-3


@dataclass(slots=True)
class CameraTelemetry:
    """Unsynchronized accelerometer and gyroscope streams."""

    accelerometer: TelemetryStream = field(default_factory=TelemetryStream)
    gyroscope: TelemetryStream = field(default_factory=TelemetryStream)
