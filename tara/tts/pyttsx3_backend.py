"""
Platform text-to-speech backend built on pyttsx3.

pyttsx3 drives the operating system's voices (SAPI5, NSSpeechSynthesizer or
eSpeak) and exposes their catalog, which the synthesis session uses for
voice selection.  The engine is created and used on a single worker thread;
``speak`` only queues work.  Completion is handed back to the event loop
that called ``speak`` with ``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import queue
import threading
from typing import Callable, List, Optional, Sequence

import pyttsx3

from ..utils.logging_system import setup_log_system
from .synthesis_session import Voice

logger = setup_log_system("pyttsx3_backend")

_SHUTDOWN = object()


class Pyttsx3Backend:
    """Speech synthesis through the platform's native voices."""

    def __init__(self, rate: Optional[int] = None, init_timeout: float = 5.0) -> None:
        self.rate = rate
        self._jobs: "queue.Queue[object]" = queue.Queue()
        self._voices: List[Voice] = []
        self._engine = None
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._worker, name="TTSWorker", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=init_timeout):
            logger.error("TTS engine did not initialise in time.")

    @property
    def available(self) -> bool:
        return self._engine is not None

    def voices(self) -> Sequence[Voice]:
        return list(self._voices)

    def speak(
        self,
        text: str,
        voice: Optional[Voice],
        on_done: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> None:
        if self._engine is None:
            raise RuntimeError("TTS engine is not available")
        loop = asyncio.get_running_loop()
        self._jobs.put((text, voice, loop, on_done, on_error))

    def cancel(self) -> None:
        # Drop queued utterances, then interrupt the one being spoken
        try:
            while True:
                self._jobs.get_nowait()
        except queue.Empty:
            pass
        if self._engine is not None:
            try:
                self._engine.stop()
            except Exception as e:
                logger.error(f"Failed to stop TTS playback: {e}", exc_info=True)

    def close(self) -> None:
        self.cancel()
        self._jobs.put(_SHUTDOWN)
        self._thread.join(timeout=2.0)

    # ------------------------------------------------------------------
    def _worker(self) -> None:
        try:
            engine = pyttsx3.init()
            if self.rate:
                engine.setProperty("rate", self.rate)
            self._voices = [
                Voice(id=str(v.id), name=str(v.name or v.id), language=_language(v))
                for v in engine.getProperty("voices")
            ]
            self._engine = engine
            logger.info(f"TTS engine ready with {len(self._voices)} voices.")
        except Exception as e:
            logger.error(f"Failed to initialise TTS engine: {e}", exc_info=True)
            return
        finally:
            self._ready.set()

        while True:
            job = self._jobs.get()
            if job is _SHUTDOWN:
                break
            text, voice, loop, on_done, on_error = job
            try:
                if voice is not None:
                    engine.setProperty("voice", voice.id)
                engine.say(text)
                engine.runAndWait()
            except Exception as e:
                logger.error(f"Error during TTS playback: {e}", exc_info=True)
                _post(loop, on_error, str(e))
            else:
                _post(loop, on_done)


def _language(voice) -> str:
    langs = getattr(voice, "languages", None) or []
    if not langs:
        return ""
    lang = langs[0]
    if isinstance(lang, bytes):
        return lang.decode("utf-8", errors="ignore").strip("\x00\x05")
    return str(lang)


def _post(loop: asyncio.AbstractEventLoop, callback, *args) -> None:
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        logger.debug("Event loop closed; dropping TTS callback.")
