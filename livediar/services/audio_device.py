from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

from livediar.dtos import AudioFormat

# (samples [frames, channels], device timestamp seconds)
FrameCallback = Callable[[np.ndarray, float], None]


class CaptureHandle(ABC):
    @abstractmethod
    def close(self):
        """Stop the callback and release the device. Must be idempotent."""


class InputDevice(ABC):
    """
    Source of raw capture frames. The engine only talks to devices through this.
    """

    @abstractmethod
    def native_format(self) -> AudioFormat:
        """Format the device delivers without forcing conversion. Raises DeviceConfigurationError."""

    @abstractmethod
    def open(self, callback: FrameCallback, fmt: AudioFormat, blocksize: int) -> CaptureHandle:
        """Start delivering frames to callback. Raises DeviceConfigurationError."""

    def current_route(self) -> Optional[str]:
        """Identifier of the active input route, polled for route changes."""
        return None
