import asyncio
import unittest

from tara.errors import (
    CapabilityUnsupported,
    MicrophoneNotFound,
    NoSpeechDetected,
    PermissionDenied,
    RecognitionError,
)
from tara.voice_recognition.recognition_session import RecognitionStatus, SpeechInputSession
from tests.fakes import FakeMicrophone, FakeRecognitionBackend


class TestSpeechInputSession(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.backend = FakeRecognitionBackend()
        self.microphone = FakeMicrophone()
        self.interims = []
        self.utterances = []
        self.errors = []
        self.session = SpeechInputSession(
            self.backend,
            self.microphone,
            on_interim=self.interims.append,
            on_utterance=self.utterances.append,
            on_error=self.errors.append,
            restart_delay=0,
        )

    async def test_start_opens_a_channel(self):
        await self.session.start()
        self.assertTrue(self.session.active)
        self.assertEqual(self.session.status, RecognitionStatus.LISTENING)
        self.assertEqual(self.microphone.requests, 1)
        self.assertEqual(self.backend.starts, 1)

    async def test_start_twice_is_a_no_op(self):
        await self.session.start()
        await self.session.start()
        self.assertEqual(self.backend.starts, 1)

    async def test_unsupported_host(self):
        session = SpeechInputSession(None)
        self.assertFalse(session.supported)
        with self.assertRaises(CapabilityUnsupported):
            await session.start()
        self.assertFalse(session.active)

    async def test_interim_then_final_result(self):
        await self.session.start()
        self.backend.interim("I'm feeling")
        self.assertEqual(self.session.pending_text, "I'm feeling")
        self.backend.final("  I'm feeling upset ")
        self.assertEqual(self.interims, ["I'm feeling"])
        self.assertEqual(self.utterances, ["I'm feeling upset"])
        self.assertEqual(self.session.pending_text, "")
        self.assertEqual(self.session.status, RecognitionStatus.LISTENING)

    async def test_empty_final_falls_back_to_pending_text(self):
        await self.session.start()
        self.backend.interim("hello there")
        self.backend.final("")
        self.assertEqual(self.utterances, ["hello there"])

    async def test_blank_utterance_is_not_reported(self):
        await self.session.start()
        self.backend.final("   ")
        self.assertEqual(self.utterances, [])

    async def test_end_of_channel_restarts_automatically(self):
        await self.session.start()
        self.backend.end()
        self.assertEqual(self.session.status, RecognitionStatus.STOPPED)
        await asyncio.sleep(0.01)
        self.assertEqual(self.backend.starts, 2)
        self.assertTrue(self.session.active)
        self.assertEqual(self.session.status, RecognitionStatus.LISTENING)

    async def test_no_speech_is_soft(self):
        await self.session.start()
        self.backend.error("no-speech")
        self.backend.end()
        await asyncio.sleep(0.01)
        self.assertTrue(self.session.active)
        self.assertEqual(self.backend.starts, 2)
        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], NoSpeechDetected)

    async def test_aborted_is_not_reported(self):
        await self.session.start()
        self.backend.error("aborted")
        self.assertEqual(self.errors, [])
        self.assertTrue(self.session.active)

    async def test_other_errors_are_reported_without_stopping(self):
        await self.session.start()
        self.backend.error("network")
        self.assertTrue(self.session.active)
        self.assertIsInstance(self.errors[0], RecognitionError)
        self.assertEqual(self.errors[0].code, "network")
        self.assertFalse(self.errors[0].fatal)

    async def test_permission_denied_stops_for_good(self):
        await self.session.start()
        self.backend.error("not-allowed")
        self.backend.end()
        await asyncio.sleep(0.01)
        self.assertFalse(self.session.active)
        self.assertEqual(self.session.status, RecognitionStatus.IDLE)
        self.assertEqual(self.backend.starts, 1)
        self.assertEqual(self.backend.aborts, 1)
        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], PermissionDenied)

    async def test_microphone_refusal_propagates(self):
        for error in (PermissionDenied("no"), MicrophoneNotFound("none")):
            self.microphone.error = error
            with self.assertRaises(type(error)):
                await self.session.start()
            self.assertFalse(self.session.active)
            self.assertEqual(self.session.status, RecognitionStatus.IDLE)
        self.assertEqual(self.backend.starts, 0)

    async def test_stop_ignores_late_callbacks(self):
        await self.session.start()
        listener = self.backend.listener
        self.session.stop()
        self.assertEqual(self.backend.stops, 1)
        listener.on_result("too late", True)
        listener.on_error("not-allowed")
        listener.on_end()
        await asyncio.sleep(0.01)
        self.assertEqual(self.utterances, [])
        self.assertEqual(self.errors, [])
        self.assertEqual(self.backend.starts, 1)
        self.assertEqual(self.session.status, RecognitionStatus.IDLE)

    async def test_stop_cancels_a_scheduled_restart(self):
        self.session.restart_delay = 0.05
        await self.session.start()
        self.backend.end()
        self.session.stop()
        await asyncio.sleep(0.1)
        self.assertEqual(self.backend.starts, 1)

    async def test_failed_restart_goes_idle(self):
        self.backend.fail_start_after = 1
        await self.session.start()
        self.backend.end()
        await asyncio.sleep(0.01)
        self.assertFalse(self.session.active)
        self.assertEqual(self.session.status, RecognitionStatus.IDLE)
        self.assertEqual(len(self.errors), 1)
        self.assertTrue(self.errors[0].fatal)

    async def test_restarts_are_bounded(self):
        self.session.max_restarts = 2
        await self.session.start()
        for _ in range(3):
            self.backend.end()
            await asyncio.sleep(0.01)
        self.assertFalse(self.session.active)
        self.assertEqual(self.backend.starts, 3)
        self.assertTrue(self.errors[-1].fatal)

    async def test_idle_timeouts_never_exhaust_the_restart_limit(self):
        self.session.max_restarts = 3
        await self.session.start()
        for _ in range(25):
            self.backend.error("no-speech")
            self.backend.end()
            await asyncio.sleep(0.01)
        self.assertTrue(self.session.active)
        self.assertEqual(self.backend.starts, 26)
        self.assertTrue(all(isinstance(e, NoSpeechDetected) for e in self.errors))

    async def test_long_running_channels_reset_the_restart_count(self):
        self.session.max_restarts = 2
        self.session.min_channel_seconds = 0
        await self.session.start()
        for _ in range(5):
            self.backend.end()
            await asyncio.sleep(0.01)
        self.assertTrue(self.session.active)
        self.assertEqual(self.backend.starts, 6)

    async def test_hold_and_resume(self):
        await self.session.start()
        held_listener = self.backend.listener
        self.session.hold()
        self.assertTrue(self.session.held)
        self.assertEqual(self.session.status, RecognitionStatus.STOPPED)
        self.assertEqual(self.backend.stops, 1)

        # The held channel's leftovers are dropped and do not trigger a restart
        held_listener.on_result("echo of the assistant", True)
        held_listener.on_end()
        await asyncio.sleep(0.01)
        self.assertEqual(self.utterances, [])
        self.assertEqual(self.backend.starts, 1)

        self.session.resume()
        self.assertFalse(self.session.held)
        self.assertEqual(self.session.status, RecognitionStatus.LISTENING)
        self.assertEqual(self.backend.starts, 2)
        self.backend.final("back again")
        self.assertEqual(self.utterances, ["back again"])

    async def test_resume_after_stop_does_nothing(self):
        await self.session.start()
        self.session.hold()
        self.session.stop()
        self.session.resume()
        self.assertEqual(self.backend.starts, 1)
        self.assertFalse(self.session.active)


if __name__ == "__main__":
    unittest.main()
