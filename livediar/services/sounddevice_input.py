import logging
from typing import Optional, Union

import sounddevice as sd

from livediar.dtos import AudioFormat, SampleType
from livediar.errors import DeviceConfigurationError
from livediar.services.audio_device import CaptureHandle, FrameCallback, InputDevice

logger = logging.getLogger("SoundDeviceInput")

MAX_CAPTURE_CHANNELS = 2
BLUETOOTH_BLOCKSIZE = 4096


class _StreamHandle(CaptureHandle):
    def __init__(self, stream: sd.InputStream):
        self.stream = stream
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.stream.stop()
        except sd.PortAudioError as e:
            logger.warning(f"Stream stop failed: {e}")
        finally:
            self.stream.close(ignore_errors=True)


class SoundDeviceInput(InputDevice):
    """
    PortAudio input via sounddevice, opened at the device's default rate.
    """

    def __init__(self, device: Optional[Union[int, str]] = None):
        self.device = device

    def _info(self) -> dict:
        try:
            return sd.query_devices(self.device, "input")
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceConfigurationError(f"No usable input device ({self.device}): {e}") from e

    def native_format(self) -> AudioFormat:
        info = self._info()
        rate = int(info["default_samplerate"])
        channels = max(1, min(int(info["max_input_channels"]), MAX_CAPTURE_CHANNELS))
        for sample_type in (SampleType.FLOAT32, SampleType.INT16):
            try:
                sd.check_input_settings(device=self.device, channels=channels,
                                        dtype=sample_type.value, samplerate=rate)
                return AudioFormat(sample_rate=rate, channels=channels, sample_type=sample_type)
            except (sd.PortAudioError, ValueError) as e:
                logger.debug(f"{info['name']}: {sample_type.value} rejected ({e})")
        raise DeviceConfigurationError(f"{info['name']} accepts neither float32 nor int16 at {rate}Hz")

    def open(self, callback: FrameCallback, fmt: AudioFormat, blocksize: int) -> CaptureHandle:
        info = self._info()
        if "bluetooth" in str(info.get("name", "")).lower():
            blocksize = max(blocksize, BLUETOOTH_BLOCKSIZE)

        def _callback(indata, frames, time_info, status):
            if status:
                logger.warning(f"Input status: {status}")
            # PortAudio reuses indata after return
            callback(indata.copy(), float(time_info.inputBufferAdcTime))

        try:
            stream = sd.InputStream(
                device=self.device,
                samplerate=fmt.sample_rate,
                channels=fmt.channels,
                dtype=fmt.sample_type.value,
                blocksize=blocksize,
                callback=_callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceConfigurationError(f"Cannot open {info['name']} at {fmt}: {e}") from e

        logger.info(f"Capture installed on '{info['name']}' at {fmt}, blocksize {blocksize}")
        return _StreamHandle(stream)

    def current_route(self) -> Optional[str]:
        try:
            info = sd.query_devices(self.device, "input")
        except (sd.PortAudioError, ValueError):
            return None
        return f"{info['name']}@{int(info['default_samplerate'])}"
