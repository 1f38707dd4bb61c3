from __future__ import annotations

import sounddevice as sd

from voxcore.audio.ring_buffer import RingBuffer
from voxcore.errors import AudioDeviceError
from voxcore.telemetry.logging import get_logger


class SoundDeviceSource:
    """Microphone capture; the PortAudio callback only copies into the ring buffer."""

    def __init__(
        self,
        samplerate: int | None = None,
        channels: int = 1,
        frame_ms: int = 30,
        device: str | int | None = None,
    ) -> None:
        self._device = device
        self.channels = channels
        self.frame_ms = frame_ms
        self.sample_rate = samplerate or 0
        self._stream: sd.InputStream | None = None
        self._ring: RingBuffer | None = None
        self._logger = get_logger(__name__)

    def start(self, ring: RingBuffer) -> None:
        if self._stream:
            return
        try:
            if not self.sample_rate:
                info = sd.query_devices(self._device, "input")
                self.sample_rate = int(info["default_samplerate"])
            blocksize = int(self.sample_rate * self.frame_ms / 1000)

            def callback(indata, frames, time_info, status) -> None:  # type: ignore[no-untyped-def]
                if status:
                    self._logger.warning("audio.capture.status", status=str(status))
                ring.push(indata)

            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=blocksize,
                dtype="float32",
                callback=callback,
                device=self._device,
            )
            stream.start()
        except (sd.PortAudioError, ValueError, OSError) as exc:
            raise AudioDeviceError(f"cannot open input device {self._device!r}: {exc}") from exc
        self._stream = stream
        self._ring = ring
        self._logger.info(
            "audio.capture.started",
            samplerate=self.sample_rate,
            channels=self.channels,
            frame_ms=self.frame_ms,
            device=self._device,
        )

    def stop(self) -> None:
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        if self._ring:
            self._ring.close()
            self._ring = None
        self._logger.info("audio.capture.stopped")


__all__ = ["SoundDeviceSource"]
