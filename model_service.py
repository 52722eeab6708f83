"""
Model provider capability.

The agent only needs ``query(history)`` and ``stream_query(history, on_chunk)``
with a hard budget on the number of calls. BedrockModel talks to Amazon Bedrock
through boto3; ScriptedModel replays canned outputs for tests and dry runs.
"""

import asyncio
import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config import model_config
from errors import ContextWindowExceededError, CostLimitExceededError, ModelError, RetryError

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

THROTTLING_CODES = {"ThrottlingException", "ServiceUnavailableException", "ModelNotReadyException"}


def translate_client_error(e: ClientError, prefix: str) -> ModelError:
    """Map a botocore ClientError onto the agent's model errors."""
    error = e.response.get("Error", {})
    code = error.get("Code", "")
    message = f"{prefix}: {error.get('Message', str(e))}"
    if code in THROTTLING_CODES:
        return RetryError(message)
    lowered = message.lower()
    if code == "ValidationException" and ("too long" in lowered or "context window" in lowered):
        return ContextWindowExceededError(message)
    return ModelError(message)


class BaseModel(ABC):
    """Call-budgeted model capability."""

    def __init__(self, max_calls: Optional[int] = None):
        self.max_calls = max_calls if max_calls is not None else model_config.max_calls
        self.num_calls = 0

    def _check_budget(self) -> None:
        if self.num_calls >= self.max_calls:
            raise CostLimitExceededError("Maximum model calls exceeded.")
        self.num_calls += 1

    def reset_budget(self) -> None:
        self.num_calls = 0

    @abstractmethod
    async def query(self, history: List[Dict[str, str]]) -> str:
        """Return the full model output for history ([{role, content}])."""

    @abstractmethod
    async def stream_query(self, history: List[Dict[str, str]], on_chunk: ChunkCallback) -> str:
        """Like query, calling on_chunk(accumulated_text) as output arrives."""


class BedrockModel(BaseModel):
    """Anthropic models on Amazon Bedrock."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        max_calls: Optional[int] = None,
        client: Any = None,
    ):
        super().__init__(max_calls)
        self.model_id = model_id or model_config.model_id
        self.region = region or model_config.region
        self.client = client or self._create_client()
        logger.info(f"BedrockModel initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}
            if model_config.profile_name:
                session_kwargs["profile_name"] = model_config.profile_name
            session = boto3.Session(**session_kwargs)
            retries = Config(retries={"max_attempts": model_config.max_retries, "mode": "adaptive"})
            return session.client("bedrock-runtime", config=retries)
        except NoCredentialsError:
            raise ModelError("AWS credentials not configured.")
        except BotoCoreError as e:
            raise ModelError(f"Failed to initialize Bedrock client: {e}")

    def format_request_body(self, history: List[Dict[str, str]]) -> Dict[str, Any]:
        """Anthropic messages body; system messages go to the system field."""
        system_parts = []
        messages: List[Dict[str, str]] = []
        for msg in history:
            role = msg["role"]
            content = msg.get("content") or ""
            if role == "system":
                system_parts.append(content)
                continue
            if not content.strip():
                content = "(no content)"
            # Consecutive same-role messages are not accepted by the API
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += "\n\n" + content
            else:
                messages.append({"role": role, "content": content})

        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": model_config.max_tokens,
            "temperature": model_config.temperature,
            "messages": messages,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        return body

    def _invoke(self, body: Dict[str, Any]) -> str:
        try:
            response = self.client.invoke_model(
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            error = translate_client_error(e, "Bedrock API error")
            logger.error(str(error))
            raise error
        return "".join(
            block.get("text", "")
            for block in response_body.get("content", [])
            if block.get("type") == "text"
        )

    def _stream(self, body: Dict[str, Any], chunk_queue: queue.Queue, stop: threading.Event) -> None:
        """Producer thread: push text deltas, then None (done) or the exception."""
        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            for event in response["body"]:
                if stop.is_set():
                    break
                chunk = json.loads(event["chunk"]["bytes"])
                if chunk.get("type") != "content_block_delta":
                    continue
                delta = chunk.get("delta", {})
                if delta.get("type") == "text_delta" and delta.get("text"):
                    chunk_queue.put(delta["text"])
            chunk_queue.put(None)
        except ClientError as e:
            error = translate_client_error(e, "Streaming error")
            logger.error(str(error))
            chunk_queue.put(error)
        except Exception as exc:
            chunk_queue.put(exc)

    async def query(self, history: List[Dict[str, str]]) -> str:
        self._check_budget()
        body = self.format_request_body(history)
        logger.info(f"Invoking model: {self.model_id}")
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._invoke, body)

    async def stream_query(self, history: List[Dict[str, str]], on_chunk: ChunkCallback) -> str:
        self._check_budget()
        body = self.format_request_body(history)
        logger.info(f"Streaming from model: {self.model_id}")

        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()
        producer_thread = threading.Thread(target=self._stream, args=(body, chunk_queue, stop), daemon=True)
        producer_thread.start()

        loop = asyncio.get_event_loop()
        text = ""
        try:
            while True:
                chunk = await loop.run_in_executor(None, chunk_queue.get)
                if chunk is None:
                    break
                if isinstance(chunk, Exception):
                    raise chunk
                text += chunk
                on_chunk(text)
        finally:
            stop.set()
        return text


class ScriptedModel(BaseModel):
    """Replays a fixed list of outputs, one per call."""

    def __init__(self, outputs: List[str], max_calls: Optional[int] = None, chunk_size: int = 16):
        super().__init__(max_calls if max_calls is not None else len(outputs))
        self.outputs = list(outputs)
        self.chunk_size = chunk_size
        self.received: List[List[Dict[str, str]]] = []

    def _next_output(self, history: List[Dict[str, str]]) -> str:
        self._check_budget()
        self.received.append([dict(m) for m in history])
        if not self.outputs:
            raise ModelError("No scripted output left")
        return self.outputs.pop(0)

    async def query(self, history: List[Dict[str, str]]) -> str:
        return self._next_output(history)

    async def stream_query(self, history: List[Dict[str, str]], on_chunk: ChunkCallback) -> str:
        output = self._next_output(history) or ""
        for end in range(self.chunk_size, len(output) + self.chunk_size, self.chunk_size):
            on_chunk(output[:end])
            await asyncio.sleep(0)
        return output
