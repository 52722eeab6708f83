"""Tests for the model capability with a fake Bedrock client."""

import asyncio
import io
import json

import pytest
from botocore.exceptions import ClientError

from errors import ContextWindowExceededError, CostLimitExceededError, ModelError, RetryError
from model_service import BedrockModel, ScriptedModel, translate_client_error


class FakeBedrockClient:
    def __init__(self, text="Hello", deltas=None, error=None):
        self.text = text
        self.deltas = deltas or []
        self.error = error
        self.calls = []

    def invoke_model(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        body = {"content": [{"type": "text", "text": self.text}]}
        return {"body": io.BytesIO(json.dumps(body).encode())}

    def invoke_model_with_response_stream(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        events = [{"chunk": {"bytes": json.dumps({"type": "message_start"}).encode()}}]
        for delta in self.deltas:
            payload = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": delta}}
            events.append({"chunk": {"bytes": json.dumps(payload).encode()}})
        return {"body": events}


HISTORY = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "first"},
    {"role": "user", "content": "second"},
    {"role": "assistant", "content": ""},
]


def test_request_body_merges_roles_and_lifts_system():
    model = BedrockModel(model_id="test-model", client=FakeBedrockClient())
    body = model.format_request_body(HISTORY)
    assert body["system"] == "You are helpful."
    assert body["messages"] == [
        {"role": "user", "content": "first\n\nsecond"},
        {"role": "assistant", "content": "(no content)"},
    ]
    assert body["anthropic_version"] == "bedrock-2023-05-31"


def test_query_returns_text():
    client = FakeBedrockClient(text="DISCUSSION\nok")
    model = BedrockModel(model_id="test-model", client=client, max_calls=5)
    assert asyncio.run(model.query(HISTORY)) == "DISCUSSION\nok"
    assert client.calls[0]["modelId"] == "test-model"
    assert model.num_calls == 1


def test_stream_query_reports_accumulated_text():
    client = FakeBedrockClient(deltas=["Hel", "lo ", "there"])
    model = BedrockModel(model_id="test-model", client=client, max_calls=5)
    seen = []
    result = asyncio.run(model.stream_query(HISTORY, seen.append))
    assert result == "Hello there"
    assert seen == ["Hel", "Hello ", "Hello there"]


def test_client_error_becomes_model_error():
    error = ClientError({"Error": {"Code": "ThrottlingException", "Message": "Too many requests"}}, "InvokeModel")
    model = BedrockModel(model_id="test-model", client=FakeBedrockClient(error=error), max_calls=5)
    with pytest.raises(ModelError, match="Too many requests"):
        asyncio.run(model.query(HISTORY))
    with pytest.raises(ModelError, match="Too many requests"):
        asyncio.run(model.stream_query(HISTORY, lambda text: None))


def test_call_budget():
    model = BedrockModel(model_id="test-model", client=FakeBedrockClient(), max_calls=1)
    asyncio.run(model.query(HISTORY))
    with pytest.raises(CostLimitExceededError, match="Maximum model calls exceeded."):
        asyncio.run(model.query(HISTORY))
    model.reset_budget()
    asyncio.run(model.query(HISTORY))


def test_scripted_model_streams_chunks():
    model = ScriptedModel(["abcdefgh"], chunk_size=3)
    seen = []
    assert asyncio.run(model.stream_query(HISTORY, seen.append)) == "abcdefgh"
    assert seen == ["abc", "abcdef", "abcdefgh"]
    assert model.received[0][1]["content"] == "first"
    with pytest.raises(CostLimitExceededError):
        asyncio.run(model.query(HISTORY))


def test_client_errors_are_classified():
    throttled = ClientError({"Error": {"Code": "ThrottlingException", "Message": "Slow down"}}, "InvokeModel")
    too_long = ClientError(
        {"Error": {"Code": "ValidationException", "Message": "Input is too long for requested model."}},
        "InvokeModel",
    )
    denied = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "No access"}}, "InvokeModel")
    assert type(translate_client_error(throttled, "x")) is RetryError
    assert type(translate_client_error(too_long, "x")) is ContextWindowExceededError
    error = translate_client_error(denied, "Bedrock API error")
    assert type(error) is ModelError
    assert str(error) == "Bedrock API error: No access"
