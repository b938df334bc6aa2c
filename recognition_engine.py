from __future__ import annotations

import asyncio
import base64
import logging
import os
from contextlib import suppress
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
from openai import APIStatusError, AsyncOpenAI

from audio_listener import StreamingAudioFrame
from config_utils import read_float_env, read_int_env, read_str_env

ERROR_NO_SPEECH = "no-speech"
ERROR_ABORTED = "aborted"
ERROR_AUDIO_CAPTURE = "audio-capture"
ERROR_NETWORK = "network"
ERROR_NOT_ALLOWED = "not-allowed"
ERROR_SERVICE_NOT_ALLOWED = "service-not-allowed"

FATAL_ERROR_CODES = frozenset({ERROR_NOT_ALLOWED, ERROR_SERVICE_NOT_ALLOWED})


class RecognitionUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class EngineEvent:
    kind: str
    final_text: str = ""
    interim_text: str = ""
    code: str = ""
    message: str = ""

    @classmethod
    def started(cls) -> "EngineEvent":
        return cls(kind="start")

    @classmethod
    def result(cls, final_text: str, interim_text: str) -> "EngineEvent":
        return cls(kind="result", final_text=final_text, interim_text=interim_text)

    @classmethod
    def ended(cls) -> "EngineEvent":
        return cls(kind="end")

    @classmethod
    def failed(cls, code: str, message: str = "") -> "EngineEvent":
        return cls(kind="error", code=code, message=message)


class RecognitionEngine(Protocol):
    events: asyncio.Queue[EngineEvent]

    def ensure_available(self) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def abort(self) -> None:
        ...


class RealtimeRecognitionEngine:
    """Continuous recognizer backed by an OpenAI realtime transcription session.

    Control calls return immediately; everything the session produces is
    published on ``events`` in arrival order. Every session that was started
    publishes exactly one ``end`` event, whichever way it finishes.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        audio_queue: Optional[asyncio.Queue[StreamingAudioFrame]] = None,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini-transcribe",
        language: str = "zh",
    ) -> None:
        self._loop = loop
        self._audio_queue = audio_queue
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client: Optional[AsyncOpenAI] = None
        primary_session_model = read_str_env("REALTIME_SESSION_MODEL", "gpt-realtime-mini")
        fallback_session_model = read_str_env("REALTIME_SESSION_FALLBACK_MODEL", "gpt-realtime")
        self._session_models = [primary_session_model]
        if fallback_session_model not in self._session_models:
            self._session_models.append(fallback_session_model)
        self._active_session_model_index = 0
        primary_model = read_str_env("TRANSCRIPTION_MODEL", model)
        fallback_model = read_str_env("TRANSCRIPTION_FALLBACK_MODEL", "whisper-1")
        self._models = [primary_model]
        if fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._language = read_str_env("RECOGNITION_LANGUAGE", language).lower()
        self._vad_threshold = read_float_env("REALTIME_VAD_THRESHOLD", 0.45)
        self._vad_prefix_padding_ms = read_int_env("REALTIME_VAD_PREFIX_MS", 220)
        self._vad_silence_duration_ms = read_int_env("REALTIME_VAD_SILENCE_MS", 500)
        self._flush_timeout_s = read_float_env("REALTIME_FLUSH_TIMEOUT_MS", 1500.0) / 1000.0
        self.events: asyncio.Queue[EngineEvent] = asyncio.Queue(
            maxsize=read_int_env("REALTIME_EVENT_QUEUE_MAXSIZE", 256)
        )
        self._connection = None
        self._session_task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._preview_text_by_item: dict[str, str] = {}
        self._open_items: set[str] = set()
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._session_task is not None and not self._session_task.done()

    def ensure_available(self) -> None:
        if not self._api_key:
            raise RecognitionUnavailableError("OPENAI_API_KEY is required for speech recognition.")
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)

    def start(self) -> None:
        if self.is_running:
            return
        self.ensure_available()
        self._stopping = False
        self.last_error = None
        self._reset_items()
        self._session_task = self._loop.create_task(self._run_session(), name="realtime-recognition-session")

    def stop(self) -> None:
        if not self.is_running or self._stopping:
            return
        self._stopping = True
        self._loop.create_task(self._flush_and_close(), name="realtime-recognition-flush")

    def abort(self) -> None:
        if not self.is_running:
            return
        self._reset_items()
        assert self._session_task is not None
        self._session_task.cancel()

    async def _run_session(self) -> None:
        sender: Optional[asyncio.Task[None]] = None
        try:
            self._connection = await self._connect()
            self._publish(EngineEvent.started())
            sender = asyncio.create_task(self._pump_audio(), name="realtime-recognition-audio")
            await self._receive_events()
        except asyncio.CancelledError:
            raise
        except APIStatusError as exc:
            self.last_error = str(exc)
            code = ERROR_NOT_ALLOWED if exc.status_code in (401, 403) else ERROR_NETWORK
            self._publish(EngineEvent.failed(code, self.last_error))
        except Exception as exc:  # noqa: BLE001 - realtime boundary
            self.last_error = str(exc)
            self._publish(EngineEvent.failed(ERROR_NETWORK, self.last_error))
        finally:
            if sender is not None:
                sender.cancel()
                with suppress(asyncio.CancelledError):
                    await sender
            connection, self._connection = self._connection, None
            if connection is not None:
                with suppress(Exception):
                    await connection.close()
            self._reset_items()
            self._stopping = False
            self._publish(EngineEvent.ended())

    async def _connect(self):
        assert self._client is not None
        last_error: Optional[Exception] = None
        for session_model_index in range(self._active_session_model_index, len(self._session_models)):
            session_model_name = self._session_models[session_model_index]
            for model_index in range(self._active_model_index, len(self._models)):
                model_name = self._models[model_index]
                connection = None
                try:
                    connection = await self._client.realtime.connect(model=session_model_name).enter()
                    await connection.session.update(session=self._session_config(model_name))
                    self._active_session_model_index = session_model_index
                    self._active_model_index = model_index
                    return connection
                except APIStatusError as exc:
                    if connection is not None:
                        with suppress(Exception):
                            await connection.close()
                    if exc.status_code in (401, 403):
                        raise
                    last_error = exc
                except Exception as exc:  # noqa: BLE001 - realtime startup boundary
                    last_error = exc
                    if connection is not None:
                        with suppress(Exception):
                            await connection.close()

        raise RuntimeError(f"Realtime recognition failed with all configured models: {last_error}") from last_error

    def _session_config(self, model_name: str) -> dict[str, object]:
        return {
            "type": "transcription",
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": 24000},
                    "transcription": {"model": model_name, "language": self._language},
                    "turn_detection": {
                        "type": "server_vad",
                        "prefix_padding_ms": self._vad_prefix_padding_ms,
                        "silence_duration_ms": self._vad_silence_duration_ms,
                        "threshold": self._vad_threshold,
                    },
                }
            },
        }

    async def _flush_and_close(self) -> None:
        connection = self._connection
        if connection is not None:
            try:
                await connection.input_audio_buffer.commit()
            except Exception as exc:  # noqa: BLE001 - nothing buffered to flush
                logging.debug("recognition_flush_commit_failed error=%s", exc)
            try:
                await asyncio.wait_for(self._wait_items_settled(), timeout=self._flush_timeout_s)
            except asyncio.TimeoutError:
                logging.info("recognition_flush_timeout pending_items=%d", len(self._open_items))
        task = self._session_task
        if task is not None and not task.done():
            task.cancel()

    async def _wait_items_settled(self) -> None:
        # Give the server a moment to open an item for the committed audio.
        await asyncio.sleep(0.05)
        while self._open_items:
            await asyncio.sleep(0.05)

    async def _pump_audio(self) -> None:
        if self._audio_queue is None:
            return
        while True:
            frame = await self._audio_queue.get()
            connection = self._connection
            if connection is None:
                continue
            pcm16_bytes = self._to_pcm16_24khz(frame.samples, frame.sample_rate)
            await connection.input_audio_buffer.append(audio=base64.b64encode(pcm16_bytes).decode("ascii"))

    async def _receive_events(self) -> None:
        assert self._connection is not None
        async for event in self._connection:
            event_type = getattr(event, "type", "")
            item_id = getattr(event, "item_id", "") or ""
            if event_type in ("input_audio_buffer.speech_started", "input_audio_buffer.committed"):
                if item_id:
                    self._open_items.add(item_id)
                continue
            if event_type == "conversation.item.input_audio_transcription.delta":
                self._handle_delta_event(item_id, getattr(event, "delta", None) or "")
                continue
            if event_type == "conversation.item.input_audio_transcription.completed":
                self._handle_completed_event(item_id, getattr(event, "transcript", None) or "")
                continue
            if event_type == "conversation.item.input_audio_transcription.failed":
                self._open_items.discard(item_id)
                self._preview_text_by_item.pop(item_id, None)
                message = getattr(getattr(event, "error", None), "message", None) or "Realtime transcription failed"
                self.last_error = str(message)
                self._publish(EngineEvent.failed(ERROR_NO_SPEECH, self.last_error))
                continue
            if event_type == "error":
                message = getattr(getattr(event, "error", None), "message", None) or "Unknown realtime error"
                self.last_error = str(message)
                self._publish(EngineEvent.failed(ERROR_NETWORK, self.last_error))

    def _handle_delta_event(self, item_id: str, delta: str) -> None:
        if not item_id or not delta:
            return
        self._open_items.add(item_id)
        merged = f"{self._preview_text_by_item.get(item_id, '')}{delta}"
        self._preview_text_by_item[item_id] = merged
        self._publish(EngineEvent.result("", merged.strip()))

    def _handle_completed_event(self, item_id: str, transcript: str) -> None:
        self._open_items.discard(item_id)
        self._preview_text_by_item.pop(item_id, None)
        transcript = transcript.strip()
        if transcript:
            self._publish(EngineEvent.result(transcript, ""))

    def _reset_items(self) -> None:
        self._preview_text_by_item.clear()
        self._open_items.clear()

    def _publish(self, event: EngineEvent) -> None:
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            # Terminal events must never be lost; drop the oldest instead.
            try:
                self.events.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.events.put_nowait(event)

    @staticmethod
    def _to_pcm16_24khz(samples: np.ndarray, sample_rate: int) -> bytes:
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        if sample_rate != 24000:
            target_len = max(1, int(round(mono.shape[0] * 24000 / sample_rate)))
            src_x = np.linspace(0.0, 1.0, num=mono.shape[0], endpoint=False)
            dst_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
            mono = np.interp(dst_x, src_x, mono).astype(np.float32)
        clamped = np.clip(mono, -1.0, 1.0)
        return (clamped * 32767).astype(np.int16).tobytes()
