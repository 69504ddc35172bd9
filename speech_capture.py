"""Microphone capture and DashScope transcription behind the SpeechBridge protocol.

``MicrophoneCapture`` buffers 16-bit PCM from ``sounddevice`` while a capture
is open. When the capture ends, ``DashscopeSpeechBridge`` wraps the audio as
WAV, sends it to ``qwen3-asr-flash`` with ``stream=True`` and forwards every
streamed result to the partial callback. The final transcript (or the error)
goes to the ``end_capture`` callback exactly once. ``cancel_capture`` discards
the audio without uploading it. Partials from a transcription whose capture
has since been cancelled or replaced are dropped. Callbacks run on worker
threads.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import wave
from typing import Any, Callable, Optional

from errors import ASR_PROTOCOL_ERROR, AUTH_FAILED, TRANSCRIPTION_FAILED, classify_exception
from interfaces import CaptureResultCallback, ConfigStore, PartialCallback

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger("concierge.speech")


class TranscriptionError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def pcm_to_wav_base64(pcm: bytes, sample_rate: int = 16000, channels: int = 1) -> str:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


class MicrophoneCapture:
    def __init__(self, sample_rate: int = 16000, channels: int = 1, chunk_ms: int = 100) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._pcm = bytearray()
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._stream is not None

    def has_input_device(self) -> bool:
        if sd is None:
            return False
        try:
            sd.query_devices(kind="input")
        except Exception as exc:
            logger.debug("no input device: %s", exc)
            return False
        return True

    def start(self) -> None:
        with self._lock:
            if self._stream is not None:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._pcm = bytearray()
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.chunk_ms / 1000),
                callback=self._on_audio,
            )
            self._stream.start()

    def stop(self) -> bytes:
        """Close the input stream and return everything captured since start."""
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is not None:
                stream.stop()
                stream.close()
            pcm, self._pcm = bytes(self._pcm), bytearray()
        return pcm

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if self._stream is None or np is None:
            return
        self._pcm.extend(np.asarray(indata, dtype=np.int16).tobytes())


class DashscopeSpeechBridge:
    def __init__(
        self,
        config_store: ConfigStore,
        microphone: Optional[MicrophoneCapture] = None,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
    ) -> None:
        self._config_store = config_store
        self._microphone = microphone or MicrophoneCapture()
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._on_partial: Optional[PartialCallback] = None
        self._worker: Optional[threading.Thread] = None
        self._generation = 0
        self._lock = threading.Lock()

    # SpeechBridge ------------------------------------------------------

    def is_available(self) -> bool:
        return dashscope is not None and self._microphone.has_input_device()

    def has_never_been_asked_for_permission(self) -> bool:
        return not self._config_store.get_permission_requested()

    def request_permissions(self, on_done: Callable[[], None]) -> None:
        # Desktop platforms grant microphone access on first stream open;
        # querying the device is the closest equivalent of a prompt.
        self._config_store.set_permission_requested(True)
        available = self.is_available()
        logger.debug("speech permission requested, available=%s", available)
        on_done()

    def configure_for_streaming(self, on_partial: PartialCallback) -> None:
        self._on_partial = on_partial

    def begin_capture(self) -> None:
        with self._lock:
            self._generation += 1
        self._microphone.start()

    def end_capture(self, on_result: CaptureResultCallback) -> None:
        pcm = self._microphone.stop()
        with self._lock:
            generation = self._generation
        self._worker = threading.Thread(
            target=self._transcribe, args=(pcm, on_result, generation), daemon=True
        )
        self._worker.start()

    def cancel_capture(self) -> None:
        """Stop the microphone and throw the audio away without transcribing it."""
        with self._lock:
            self._generation += 1
        pcm = self._microphone.stop()
        logger.debug("capture cancelled, discarded %d bytes", len(pcm))

    # Internal -----------------------------------------------------------

    def _transcribe(self, pcm: bytes, on_result: CaptureResultCallback, generation: int) -> None:
        if not pcm:
            on_result("", None)
            return
        try:
            text = self._recognize_stream(
                pcm_to_wav_base64(pcm, self._microphone.sample_rate, self._microphone.channels),
                generation,
            )
        except TranscriptionError as exc:
            logger.warning("transcription failed: %s %s", exc.code, exc)
            on_result(None, exc)
            return
        on_result(text, None)

    def _recognize_stream(self, wav_base64: str, generation: int) -> str:
        if dashscope is None:
            raise TranscriptionError(ASR_PROTOCOL_ERROR, "dashscope is not installed")
        api_key = self._config_store.get_api_key() or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            raise TranscriptionError(AUTH_FAILED, "No API key configured")

        latest = ""
        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            for chunk in response:
                text = extract_text(chunk)
                if text:
                    latest = text
                    if self._on_partial and self._is_current(generation):
                        self._on_partial(text)
        except Exception as exc:
            code, _ = classify_exception(exc)
            if code not in (AUTH_FAILED,):
                code = TRANSCRIPTION_FAILED
            raise TranscriptionError(code, str(exc)) from exc
        return latest

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation


def extract_text(chunk: object) -> str:
    """Pull the transcript out of one streamed DashScope response."""
    if not isinstance(chunk, dict):
        return ""
    choices = (chunk.get("output") or {}).get("choices") or []
    if not choices:
        return ""
    content = (choices[0].get("message") or {}).get("content") or []
    if not content or not isinstance(content[0], dict):
        return ""
    return str(content[0].get("text", ""))
