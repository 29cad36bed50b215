import threading
import unittest

from tara.conversation import AgentTag, Conversation, ConversationTurn, EmotionTag, Speaker
from tara.errors import (
    FailureKind,
    NetworkError,
    PaymentRequired,
    RateLimited,
    RequestInFlightError,
    ServiceUnavailable,
    ValidationError,
)
from tara.llm.chat_pipeline import (
    FALLBACK_MESSAGES,
    MAX_MESSAGES,
    ChatPipeline,
    build_messages,
    validate_request,
)
from tara.llm.metadata import MetadataBlock, render_reply
from tests.fakes import BlockingChatClient, FakeChatClient


def _history(n):
    turns = []
    for i in range(n):
        if i % 2 == 0:
            turns.append(ConversationTurn.user(f"message {i}"))
        else:
            turns.append(ConversationTurn(speaker=Speaker.ASSISTANT, text=f"reply {i}"))
    return turns


class TestBuildMessages(unittest.TestCase):
    def test_welcome_turn_is_not_sent(self):
        conversation = Conversation()
        messages = build_messages(conversation.turns, "hello")
        self.assertEqual(messages, [{"role": "user", "content": "hello"}])

    def test_history_keeps_order_and_roles(self):
        messages = build_messages(_history(3), "next")
        self.assertEqual([m["role"] for m in messages], ["user", "assistant", "user", "user"])
        self.assertEqual(messages[-1]["content"], "next")

    def test_long_history_turns_are_clipped(self):
        history = [
            ConversationTurn.user("tell me a story"),
            ConversationTurn(speaker=Speaker.ASSISTANT, text="x" * 5000),
        ]
        messages = build_messages(history, "y" * 4001)
        self.assertEqual(len(messages[1]["content"]), 4000)
        self.assertEqual(len(messages[2]["content"]), 4001)
        self.assertEqual(len(history[1].text), 5000)
        with self.assertRaises(ValidationError):
            validate_request(messages, None)


class TestValidation(unittest.TestCase):
    def test_blank_message_is_rejected(self):
        with self.assertRaises(ValidationError):
            validate_request(build_messages([], "   "), None)

    def test_envelope_limits(self):
        validate_request(build_messages(_history(MAX_MESSAGES - 1), "ok"), "x" * 100)
        with self.assertRaises(ValidationError):
            validate_request(build_messages(_history(MAX_MESSAGES), "one too many"), None)
        with self.assertRaises(ValidationError):
            validate_request(build_messages([], "y" * 4001), None)
        with self.assertRaises(ValidationError):
            validate_request(build_messages([], "hi"), "x" * 101)

    def test_invalid_request_never_reaches_the_client(self):
        client = FakeChatClient()
        pipeline = ChatPipeline(client)
        with self.assertRaises(ValidationError):
            pipeline.send_turn(_history(51), "hello")
        with self.assertRaises(ValidationError):
            pipeline.send_turn([], "z" * 4001)
        with self.assertRaises(ValidationError):
            pipeline.send_turn([], "hello", display_name="n" * 101)
        self.assertEqual(client.calls, [])
        self.assertFalse(pipeline.busy)


class TestSendTurn(unittest.TestCase):
    def test_tagged_reply_uses_embedded_metadata(self):
        raw = render_reply(
            "I'm sorry you're feeling upset.",
            MetadataBlock(emotion=EmotionTag.SAD, agent=AgentTag.EMOTIONAL, confidence=0.9),
        )
        client = FakeChatClient({"message": raw})
        turn = ChatPipeline(client).send_turn([], "I'm feeling upset", display_name="Sam")

        self.assertEqual(turn.speaker, Speaker.ASSISTANT)
        self.assertEqual(turn.text, "I'm sorry you're feeling upset.")
        self.assertEqual(turn.emotion, EmotionTag.SAD)
        self.assertEqual(turn.agent, AgentTag.EMOTIONAL)
        self.assertIsNone(turn.failure)
        messages, user_name = client.calls[0]
        self.assertEqual(messages, [{"role": "user", "content": "I'm feeling upset"}])
        self.assertEqual(user_name, "Sam")

    def test_untagged_reply_uses_endpoint_fields(self):
        client = FakeChatClient(
            {"message": "Great news!", "emotion": "happy", "agent": "conversational", "confidence": 0.6}
        )
        turn = ChatPipeline(client).send_turn([], "I got the job")
        self.assertEqual(turn.text, "Great news!")
        self.assertEqual(turn.emotion, EmotionTag.HAPPY)
        self.assertAlmostEqual(turn.confidence, 0.6)

    def test_untagged_reply_without_fields_gets_defaults(self):
        turn = ChatPipeline(FakeChatClient({"message": "Sure."})).send_turn([], "hi")
        self.assertEqual(turn.emotion, EmotionTag.NEUTRAL)
        self.assertEqual(turn.agent, AgentTag.CONVERSATIONAL)
        self.assertAlmostEqual(turn.confidence, 0.8)

    def test_every_failure_kind_becomes_a_distinct_fallback_turn(self):
        cases = [
            (RateLimited("slow down"), FailureKind.RATE_LIMITED),
            (PaymentRequired("no credits"), FailureKind.PAYMENT_REQUIRED),
            (ServiceUnavailable("boom"), FailureKind.SERVICE_UNAVAILABLE),
            (NetworkError("offline"), FailureKind.NETWORK),
        ]
        texts = set()
        for error, kind in cases:
            pipeline = ChatPipeline(FakeChatClient(error))
            turn = pipeline.send_turn([], "hello")
            self.assertEqual(turn.speaker, Speaker.ASSISTANT)
            self.assertEqual(turn.failure, kind)
            self.assertTrue(turn.text.strip())
            self.assertEqual(turn.text, FALLBACK_MESSAGES[kind])
            self.assertFalse(pipeline.busy)
            texts.add(turn.text)
        self.assertEqual(len(texts), 4)

    def test_empty_reply_is_treated_as_service_failure(self):
        turn = ChatPipeline(FakeChatClient({"message": "   "})).send_turn([], "hello")
        self.assertEqual(turn.failure, FailureKind.SERVICE_UNAVAILABLE)

    def test_second_request_is_rejected_while_one_is_in_flight(self):
        client = BlockingChatClient({"message": "first"})
        pipeline = ChatPipeline(client)
        results = []
        worker = threading.Thread(target=lambda: results.append(pipeline.send_turn([], "one")))
        worker.start()
        try:
            self.assertTrue(client.entered.wait(timeout=2))
            self.assertTrue(pipeline.busy)
            with self.assertRaises(RequestInFlightError):
                pipeline.send_turn([], "two")
        finally:
            client.release.set()
            worker.join(timeout=2)
        self.assertEqual(results[0].text, "first")
        self.assertEqual(len(client.calls), 1)
        self.assertFalse(pipeline.busy)

    def test_claim_is_exclusive_until_released(self):
        client = FakeChatClient({"message": "ok"})
        pipeline = ChatPipeline(client)
        pipeline.claim()
        self.assertTrue(pipeline.busy)
        with self.assertRaises(RequestInFlightError):
            pipeline.claim()
        with self.assertRaises(RequestInFlightError):
            pipeline.send_turn([], "hello")
        self.assertEqual(client.calls, [])
        turn = pipeline.request([{"role": "user", "content": "hello"}], "Sam")
        pipeline.release()
        self.assertFalse(pipeline.busy)
        self.assertEqual(turn.text, "ok")
        self.assertEqual(client.calls[0][1], "Sam")
        pipeline.claim()
        pipeline.release()


if __name__ == "__main__":
    unittest.main()
