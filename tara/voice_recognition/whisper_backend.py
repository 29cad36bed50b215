"""
Local speech-recognition backend using Faster Whisper and WebRTC VAD.

Once started, the backend reads the default microphone on a worker thread,
segments speech with WebRTC VAD and transcribes each segment with Faster
Whisper, reporting it as a final result.  While speech is still being
captured it reports an empty interim result so the UI can show that the
user is talking.  When no speech has been heard for ``idle_timeout``
seconds the channel ends on its own, the way browser recognisers time out;
the recognition session then restarts it.

Results are handed to the event loop that called ``start`` with
``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import threading
import time
import warnings
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

import numpy as np
import sounddevice as sd
import webrtcvad
from faster_whisper import WhisperModel

from ..errors import MicrophoneNotFound, PermissionDenied
from ..utils.logging_system import quiet_loggers, setup_log_system
from .recognition_session import RecognitionListener

logger = setup_log_system("whisper_backend")


@dataclass
class STTConfig:
    sample_rate: int = 16_000
    channels: int = 1
    frame_ms: int = 30  # VAD supports 10, 20, or 30 ms
    vad_aggressiveness: int = 2  # 0..3
    max_utterance_seconds: float = 20.0
    min_silence_time: float = 0.9  # seconds of continuous silence closing an utterance
    pre_speech_padding_ms: int = 300
    idle_timeout: float = 8.0  # channel ends after this long without speech


class SoundDeviceMicrophone:
    """Checks that an input device exists and can be opened."""

    def __init__(self, cfg: STTConfig | None = None) -> None:
        self.cfg = cfg or STTConfig()

    def _check(self) -> None:
        try:
            sd.query_devices(kind="input")
        except (ValueError, sd.PortAudioError) as e:
            raise MicrophoneNotFound("No microphone found.") from e
        try:
            sd.check_input_settings(
                samplerate=self.cfg.sample_rate, channels=self.cfg.channels, dtype="int16"
            )
        except sd.PortAudioError as e:
            raise PermissionDenied(f"Microphone could not be opened: {e}") from e

    async def request_access(self) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._check)


class WhisperRecognitionBackend:
    """Continuous VAD-segmented transcription of the default microphone."""

    def __init__(
        self,
        model_size: str = "small",
        device: str = "auto",  # 'auto' | 'cpu' | 'cuda'
        compute_type: str | None = None,  # None => smart fallback
        language: str | None = "en",
        cfg: STTConfig | None = None,
    ) -> None:
        # Suppress noisy warnings from dependencies
        warnings.filterwarnings("ignore", category=UserWarning)
        quiet_loggers("faster_whisper")
        self.cfg = cfg or STTConfig()
        self.language = language
        self._frame_samples = int(self.cfg.sample_rate * self.cfg.frame_ms / 1000)
        self._pre_pad_frames = max(1, int(self.cfg.pre_speech_padding_ms / self.cfg.frame_ms))

        self._thread: Optional[threading.Thread] = None
        self._transcribe_lock = threading.Lock()
        self._stop = threading.Event()
        self._abort = threading.Event()

        # Avoid CPU float16 errors when 'auto' picks the CPU
        if compute_type is not None:
            preferred: Iterable[str] = (compute_type,)
        elif device == "cpu":
            preferred = ("int8", "int16", "float32")
        else:
            preferred = ("float16", "int8", "int16", "float32")

        self.model: Optional[WhisperModel] = None
        for ct in preferred:
            try:
                self.model = WhisperModel(model_size, device=device, compute_type=ct)
                logger.debug(f"Loaded Whisper model='{model_size}' (device={device}, compute_type={ct}).")
                break
            except Exception as e:  # try next compute type
                logger.warning(f"Failed loading compute_type={ct}, trying next… ({e})")
        else:
            logger.error("Could not initialize Whisper model with any compute_type; recognition unavailable.")

    @property
    def available(self) -> bool:
        return self.model is not None

    # -------------- lifecycle --------------
    def start(self, listener: RecognitionListener) -> None:
        if self._thread is not None and self._thread.is_alive():
            # A stopped channel may still be transcribing its last segment.  It
            # finishes on its own; its callbacks belong to an older generation.
            logger.debug("Previous recognition channel still flushing; opening a new one.")
        loop = asyncio.get_running_loop()
        self._stop = threading.Event()
        self._abort = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(listener, loop, self._stop, self._abort),
            name="WhisperRecognition",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def abort(self) -> None:
        self._abort.set()
        self._stop.set()

    # -------------- worker --------------
    def _run(
        self,
        listener: RecognitionListener,
        loop: asyncio.AbstractEventLoop,
        stop: threading.Event,
        abort: threading.Event,
    ) -> None:
        def post(callback, *args) -> None:
            try:
                loop.call_soon_threadsafe(callback, *args)
            except RuntimeError:
                logger.debug("Event loop closed; dropping recognition callback.")

        try:
            self._capture(post, listener, stop, abort)
        except sd.PortAudioError as e:
            logger.error(f"Audio capture failed: {e}")
            post(listener.on_error, "audio-capture")
        except Exception as e:
            logger.error(f"Error in recognition worker: {e}", exc_info=True)
            post(listener.on_error, "network" if "connection" in str(e).lower() else "unknown")
        finally:
            post(listener.on_end)

    def _capture(self, post, listener: RecognitionListener, stop: threading.Event, abort: threading.Event) -> None:
        vad = webrtcvad.Vad(self.cfg.vad_aggressiveness)
        pad_buffer: list[np.ndarray] = []
        audio_frames: list[np.ndarray] = []
        state = {"speech": False, "silence_since": None, "speech_since": None}
        lock = threading.Lock()
        last_speech = time.time()

        def on_audio(indata, frames, time_info, status) -> None:
            if status and status.input_overflow:
                logger.warning("Recording input overflow: some audio frames were lost.")
            mono = indata[:, 0].copy()
            is_speech = vad.is_speech(mono.tobytes(), self.cfg.sample_rate)
            with lock:
                if not state["speech"]:
                    pad_buffer.append(mono)
                    if len(pad_buffer) > self._pre_pad_frames:
                        pad_buffer.pop(0)
                if is_speech:
                    if not state["speech"]:
                        audio_frames.extend(pad_buffer)
                        pad_buffer.clear()
                        state["speech_since"] = time.time()
                    state["speech"] = True
                    state["silence_since"] = None
                    audio_frames.append(mono)
                elif state["speech"]:
                    audio_frames.append(mono)
                    if state["silence_since"] is None:
                        state["silence_since"] = time.time()

        def take_segment() -> Optional[np.ndarray]:
            with lock:
                if not audio_frames:
                    state["speech"] = False
                    return None
                audio = np.concatenate(audio_frames, axis=0).astype(np.int16)
                audio_frames.clear()
                state.update(speech=False, silence_since=None, speech_since=None)
                return audio

        with sd.InputStream(
            samplerate=self.cfg.sample_rate,
            channels=self.cfg.channels,
            dtype="int16",
            blocksize=self._frame_samples,
            callback=on_audio,
        ):
            logger.debug("Recognition channel open.")
            announced = False
            while not stop.is_set():
                now = time.time()
                with lock:
                    speaking = state["speech"]
                    silence_since = state["silence_since"]
                    speech_since = state["speech_since"]
                if speaking:
                    last_speech = now
                    if not announced:
                        post(listener.on_result, "", False)
                        announced = True
                    ended = silence_since is not None and now - silence_since >= self.cfg.min_silence_time
                    too_long = speech_since is not None and now - speech_since >= self.cfg.max_utterance_seconds
                    if ended or too_long:
                        self._deliver(post, listener, take_segment())
                        announced = False
                elif now - last_speech >= self.cfg.idle_timeout:
                    logger.debug("No speech for a while; ending recognition channel.")
                    post(listener.on_error, "no-speech")
                    return
                time.sleep(0.02)

        if not abort.is_set():
            # stop() finalises whatever was being said
            self._deliver(post, listener, take_segment())

    def _deliver(self, post, listener: RecognitionListener, audio: Optional[np.ndarray]) -> None:
        if audio is None or audio.size == 0:
            return
        text = self.transcribe(audio)
        post(listener.on_result, text, True)

    # -------------- transcription --------------
    def transcribe(self, audio_int16: np.ndarray, *, beam_size: int = 5) -> str:
        """Transcribe an int16 mono signal.  Returns the concatenated text."""
        if audio_int16.size == 0 or self.model is None:
            return ""
        audio_f32 = (audio_int16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)
        # An old channel may still be finishing; one transcription at a time
        with self._transcribe_lock:
            segments, _info = self.model.transcribe(audio_f32, beam_size=beam_size, language=self.language)
            text = " ".join(seg.text.strip() for seg in segments).strip()
        logger.debug(f"Transcription result: '{text}'")
        return text
