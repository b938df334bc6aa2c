from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np
import sounddevice as sd

from config_utils import read_int_env


class AudioCaptureUnavailable(RuntimeError):
    pass


@dataclass
class StreamingAudioFrame:
    captured_at: datetime
    sample_rate: int
    samples: np.ndarray


class MicrophoneLevelSampler:
    """Microphone capture feeding the VAD poll and, optionally, the recognizer.

    The input stream is opened once and then suspended/resumed across listening
    sessions; ``close`` is the only call that releases the device.
    """

    MIN_DECIBELS = -100.0
    MAX_DECIBELS = -30.0

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        sample_rate: int = 16000,
        channels: int = 1,
        fft_size: int = 2048,
        preferred_device: Optional[str] = None,
        stream_output_queue: Optional[asyncio.Queue[StreamingAudioFrame]] = None,
    ) -> None:
        self._loop = loop
        self._sample_rate = sample_rate
        self._channels = channels
        self._fft_size = max(32, read_int_env("VAD_FFT_SIZE", fft_size))
        self._preferred_device = preferred_device
        self._stream_output_queue = stream_output_queue

        self._stream: Optional[sd.InputStream] = None
        self._window = np.zeros((self._fft_size,), dtype=np.float32)
        self._window_lock = threading.Lock()
        self._active = False

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def is_active(self) -> bool:
        return self._active

    @staticmethod
    def list_input_devices() -> list[str]:
        devices = sd.query_devices()
        names: list[str] = []
        for d in devices:
            if int(d.get("max_input_channels", 0)) > 0:
                names.append(str(d.get("name", "Unknown input device")))
        return names

    def open(self) -> None:
        if self._stream is not None:
            self.resume()
            return
        try:
            device = self._resolve_input_device()
            stream = sd.InputStream(
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype="float32",
                callback=self._audio_callback,
                device=device,
                blocksize=0,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise AudioCaptureUnavailable(f"Microphone capture unavailable: {exc}") from exc
        self._stream = stream
        self._active = True
        logging.info("microphone_opened device=%s rate=%d", device or "default", self._sample_rate)

    def resume(self) -> None:
        if self._stream is None:
            self.open()
            return
        if self._active:
            return
        try:
            self._stream.start()
        except sd.PortAudioError as exc:
            raise AudioCaptureUnavailable(f"Microphone capture could not resume: {exc}") from exc
        self._active = True

    def suspend(self) -> None:
        if self._stream is None or not self._active:
            return
        self._active = False
        self._stream.stop()
        with self._window_lock:
            self._window.fill(0.0)

    def close(self) -> None:
        self._active = False
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        with self._window_lock:
            self._window.fill(0.0)

    def read_level_frame(self) -> Optional[np.ndarray]:
        if not self._active:
            return None
        with self._window_lock:
            window = self._window.copy()
        return self.frequency_levels(window, self.MIN_DECIBELS, self.MAX_DECIBELS)

    @staticmethod
    def frequency_levels(samples: np.ndarray, min_db: float, max_db: float) -> np.ndarray:
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        if mono.size == 0:
            return np.zeros((0,), dtype=np.float32)
        windowed = mono * np.blackman(mono.size).astype(np.float32)
        magnitudes = np.abs(np.fft.rfft(windowed))[: mono.size // 2] / mono.size
        decibels = 20.0 * np.log10(np.maximum(magnitudes, 1e-12))
        levels = (decibels - min_db) / (max_db - min_db)
        return np.clip(levels, 0.0, 1.0).astype(np.float32)

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        del frames, time_info
        if status:
            logging.debug("microphone_status status=%s", status)
        if not self._active:
            return

        mono = np.copy(indata[:, 0])
        with self._window_lock:
            if mono.shape[0] >= self._fft_size:
                self._window[:] = mono[-self._fft_size :]
            else:
                self._window = np.roll(self._window, -mono.shape[0])
                self._window[-mono.shape[0] :] = mono

        if self._stream_output_queue is not None:
            self._loop.call_soon_threadsafe(self._publish_stream_frame, mono, datetime.now())

    def _publish_stream_frame(self, raw_chunk: np.ndarray, captured_at: datetime) -> None:
        if self._stream_output_queue is None:
            return
        frame = StreamingAudioFrame(
            captured_at=captured_at,
            sample_rate=self._sample_rate,
            samples=raw_chunk,
        )
        try:
            self._stream_output_queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self._stream_output_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._stream_output_queue.put_nowait(frame)

    def _resolve_input_device(self) -> Optional[str]:
        if not self._preferred_device:
            return None
        lowered_target = self._preferred_device.lower()
        for name in self.list_input_devices():
            if lowered_target in name.lower():
                return name
        raise AudioCaptureUnavailable(f"MIC_DEVICE '{self._preferred_device}' was not found among input devices.")
