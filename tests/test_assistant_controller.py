import asyncio
import threading
import unittest

from tara import events
from tara.assistant_controller import AssistantController
from tara.config import TaraSettings
from tara.conversation import Speaker
from tara.errors import FailureKind, NetworkError, RequestInFlightError, ValidationError
from tara.profiles import StaticProfileLookup
from tara.turn_coordinator import TurnState
from tests.fakes import (
    BlockingChatClient,
    FakeChatClient,
    FakeMicrophone,
    FakeRecognitionBackend,
    FakeSynthesisBackend,
)


class TestAssistantController(unittest.IsolatedAsyncioTestCase):
    def build(self, client, **settings):
        self.client = client
        self.recognition_backend = FakeRecognitionBackend()
        self.synthesis_backend = FakeSynthesisBackend()
        self.controller = AssistantController(
            TaraSettings(user_id="user-1", restart_delay=0, **settings),
            recognition_backend=self.recognition_backend,
            microphone=FakeMicrophone(),
            synthesis_backend=self.synthesis_backend,
            client=client,
            profiles=StaticProfileLookup({"user-1": "Sam"}),
        )
        return self.controller

    async def test_send_text_appends_both_turns_and_speaks(self):
        controller = self.build(FakeChatClient({"message": "Hi Sam!"}))
        published = []
        controller.channel.subscribe(events.TURN, lambda e: published.append(e.payload["turn"]))

        reply = await controller.send_text("  hello  ")

        self.assertEqual(reply.text, "Hi Sam!")
        self.assertEqual([t.speaker for t in controller.conversation.turns], [Speaker.ASSISTANT, Speaker.USER, Speaker.ASSISTANT])
        self.assertEqual(controller.conversation.turns[1].text, "hello")
        self.assertEqual(published, list(controller.conversation.turns[1:]))
        self.assertEqual(self.client.calls[0][1], "Sam")
        self.assertEqual(self.synthesis_backend.spoken[0][0], "Hi Sam!")

    async def test_muted_by_settings(self):
        controller = self.build(FakeChatClient({"message": "Silent"}), tts_enabled=False)
        await controller.send_text("hello")
        self.assertEqual(self.synthesis_backend.spoken, [])
        self.assertFalse(controller.toggle_mute())

    async def test_invalid_message_appends_nothing(self):
        controller = self.build(FakeChatClient())
        for text in ("", "   ", "x" * 4001):
            with self.assertRaises(ValidationError):
                await controller.send_text(text)
        self.assertEqual(len(controller.conversation), 1)
        self.assertEqual(self.client.calls, [])

    async def test_input_is_disabled_while_a_reply_is_pending(self):
        client = BlockingChatClient({"message": "Done"})
        controller = self.build(client)
        pending = asyncio.create_task(controller.send_text("first"))
        await asyncio.sleep(0)
        self.assertFalse(controller.input_enabled)
        with self.assertRaises(RequestInFlightError):
            await controller.send_text("second")
        client.release.set()
        await pending
        self.assertTrue(controller.input_enabled)
        self.assertEqual(len(client.calls), 1)

    async def test_transport_failure_yields_fallback_and_error_event(self):
        controller = self.build(FakeChatClient(NetworkError("offline")))
        errors = []
        controller.channel.subscribe(events.ERROR, lambda e: errors.append(e.payload["error"]))
        reply = await controller.send_text("hello")
        self.assertEqual(reply.failure, FailureKind.NETWORK)
        self.assertTrue(reply.text)
        self.assertIsInstance(errors[0], NetworkError)
        self.assertEqual(controller.conversation.context(), [controller.conversation.turns[1]])

    async def test_display_name_is_looked_up_once(self):
        controller = self.build(FakeChatClient())
        lookups = []
        original = controller.profiles.display_name
        controller.profiles.display_name = lambda uid: lookups.append(uid) or original(uid)
        self.assertEqual(controller.display_name(), "Sam")
        self.assertEqual(controller.display_name(), "Sam")
        self.assertEqual(lookups, ["user-1"])

    async def test_long_reply_does_not_block_later_messages(self):
        controller = self.build(FakeChatClient({"message": "x" * 4001}, {"message": "ok"}))
        await controller.send_text("tell me everything")
        reply = await controller.send_text("thanks")
        self.assertEqual(reply.text, "ok")
        history = self.client.calls[1][0]
        self.assertEqual(history[1]["role"], "assistant")
        self.assertEqual(len(history[1]["content"]), 4000)
        self.assertEqual(history[-1], {"role": "user", "content": "thanks"})

    async def test_missing_display_name_is_looked_up_again(self):
        controller = self.build(FakeChatClient())
        answers = [None, "Sam"]
        controller.profiles.display_name = lambda uid: answers.pop(0)
        self.assertIsNone(controller.display_name())
        self.assertEqual(controller.display_name(), "Sam")
        self.assertEqual(controller.display_name(), "Sam")

    async def test_overlong_display_name_is_clipped(self):
        controller = self.build(FakeChatClient({"message": "Hi"}))
        controller.profiles = StaticProfileLookup({"user-1": "S" * 150})
        await controller.send_text("hello")
        self.assertEqual(self.client.calls[0][1], "S" * 100)

    async def test_display_name_lookup_runs_off_the_event_loop(self):
        controller = self.build(FakeChatClient({"message": "Hi"}, {"message": "Hello"}))
        lookup_threads = []
        original = controller.profiles.display_name

        def display_name(uid):
            lookup_threads.append(threading.get_ident())
            return original(uid)

        controller.profiles.display_name = display_name
        await controller.send_text("hello")
        self.assertEqual(len(lookup_threads), 1)
        self.assertNotEqual(lookup_threads[0], threading.get_ident())

    async def test_utterance_during_typed_send_is_refused_without_a_trace(self):
        client = BlockingChatClient({"message": "Typed reply"})
        controller = self.build(client)
        errors = []
        controller.channel.subscribe(events.ERROR, lambda e: errors.append(e.payload["error"]))
        self.assertTrue(await controller.start_voice_mode())

        pending = asyncio.create_task(controller.send_text("typed"))
        loop = asyncio.get_running_loop()
        try:
            self.assertTrue(await loop.run_in_executor(None, client.entered.wait, 5))
            self.recognition_backend.final("spoken")
            await controller.coordinator.wait_for_dispatch()
            self.assertTrue(any(isinstance(e, RequestInFlightError) for e in errors))
            self.assertEqual(controller.coordinator.state, TurnState.LISTENING)
        finally:
            client.release.set()
        await pending

        user_turns = [t.text for t in controller.conversation.turns if t.speaker == Speaker.USER]
        self.assertEqual(user_turns, ["typed"])
        self.assertEqual(len(client.calls), 1)

    async def test_voice_mode_round_trip(self):
        controller = self.build(FakeChatClient({"message": "I hear you."}))
        self.assertTrue(await controller.start_voice_mode())
        self.recognition_backend.final("can you hear me")
        self.assertFalse(controller.input_enabled)
        await controller.coordinator.wait_for_dispatch()
        self.assertEqual(controller.coordinator.state, TurnState.SPEAKING)
        self.synthesis_backend.finish()
        self.assertEqual(controller.coordinator.state, TurnState.LISTENING)
        controller.stop_voice_mode()
        self.assertEqual(controller.coordinator.state, TurnState.IDLE)
        self.assertFalse(controller.recognition.active)

    async def test_close_silences_everything(self):
        controller = self.build(FakeChatClient({"message": "Long answer"}))
        await controller.start_voice_mode()
        self.recognition_backend.final("talk to me")
        await controller.coordinator.wait_for_dispatch()
        controller.close()
        self.assertEqual(controller.coordinator.state, TurnState.IDLE)
        self.assertGreaterEqual(self.synthesis_backend.cancels, 1)
        self.assertTrue(self.synthesis_backend.closed)


if __name__ == "__main__":
    unittest.main()
