import asyncio
import logging
from typing import Optional

import sounddevice as sd

from roomscribe.config import MicrophoneConfig
from roomscribe.services.audio_tracks import BufferedTrack, MicrophoneAcquisitionError


def list_input_devices() -> list[dict]:
    devices = sd.query_devices()
    return [
        {
            "index": idx,
            "name": device["name"],
            "max_input_channels": device["max_input_channels"],
            "default_samplerate": device["default_samplerate"],
        }
        for idx, device in enumerate(devices)
        if device["max_input_channels"] > 0
    ]


class MicrophoneTrack(BufferedTrack):
    """The local microphone as an audio producer handle."""

    def __init__(
        self,
        device_index: Optional[int],
        samplerate: int,
        channels: int = 1,
        blocksize: int = 1024,
    ) -> None:
        super().__init__(label="microphone")
        self._device_index = device_index
        self._samplerate = samplerate
        self._channels = channels
        self._blocksize = blocksize
        self._stream: Optional[sd.RawInputStream] = None
        self._callback_counter = 0
        self._logger = logging.getLogger("roomscribe.microphone")

    def open(self) -> None:
        """Blocking device handshake; run it off the event loop."""
        try:
            device_info = sd.query_devices(self._device_index, kind="input")
        except Exception as exc:
            self._logger.exception("Invalid audio device index: %s", self._device_index)
            raise MicrophoneAcquisitionError("Invalid audio device index") from exc

        max_channels = int(device_info.get("max_input_channels", 0))
        if max_channels < 1:
            raise MicrophoneAcquisitionError("Selected device has no input channels")
        if self._channels < 1 or self._channels > max_channels:
            raise MicrophoneAcquisitionError(
                f"Invalid channel count for device (max {max_channels})"
            )
        self._logger.debug(
            "Selected device: name=%s max_channels=%s default_samplerate=%s",
            device_info.get("name"),
            max_channels,
            device_info.get("default_samplerate"),
        )

        try:
            self._stream = sd.RawInputStream(
                device=self._device_index,
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="int16",
                blocksize=self._blocksize,
                callback=self._audio_callback,
            )
            self._stream.start()
        except Exception as exc:
            self._logger.exception("Failed to start audio stream: %s", exc)
            self._close_stream()
            raise MicrophoneAcquisitionError(f"Failed to start microphone: {exc}") from exc
        self._logger.info(
            "Microphone open: device=%s samplerate=%s channels=%s",
            device_info.get("name"),
            self._samplerate,
            self._channels,
        )

    def release(self) -> None:
        self._close_stream()
        super().release()

    def _audio_callback(self, indata, frames, time, status) -> None:
        if status:
            self._logger.warning("Audio callback status: %s", status)
        self._callback_counter += 1
        if self._callback_counter % 200 == 0:
            self._logger.debug("Audio callback frames=%s", frames)
        self.push(bytes(indata), self._channels)

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            self._logger.warning("Error closing microphone stream: %s", exc)


async def acquire_microphone(config: MicrophoneConfig, samplerate: int) -> MicrophoneTrack:
    track = MicrophoneTrack(
        device_index=config.device_index,
        samplerate=samplerate,
        channels=config.channels,
        blocksize=config.blocksize,
    )
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, track.open)
    except MicrophoneAcquisitionError:
        track.release()
        raise
    except Exception as exc:
        track.release()
        raise MicrophoneAcquisitionError(str(exc)) from exc
    return track
