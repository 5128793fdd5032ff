"""
Amazon Bedrock service module.
Builds Anthropic Messages requests (with extended thinking and tools) and
streams the response as simple typed chunk dicts.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, List, Optional

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from config import (
    aws_config,
    model_config,
    get_credentials_info,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
    supports_thinking,
    get_thinking_max_budget,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

# Exception keys Bedrock may put inside the event stream instead of a chunk
_STREAM_ERROR_KEYS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
    "modelTimeoutException",
)


class BedrockError(Exception):
    """Bedrock failure carrying what the retry classifier needs"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after_ms: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after_ms = retry_after_ms
        self.headers = dict(headers or {})

    @classmethod
    def from_client_error(cls, e: ClientError) -> "BedrockError":
        error = e.response.get("Error", {})
        meta = e.response.get("ResponseMetadata", {})
        headers = meta.get("HTTPHeaders") or {}
        return cls(
            error.get("Message", str(e)),
            status_code=meta.get("HTTPStatusCode"),
            error_code=error.get("Code"),
            headers=headers,
        )


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    # Extended thinking settings
    enable_thinking: bool = True
    thinking_budget: int = 10000
    extra: Dict[str, Any] = field(default_factory=dict)


class BedrockService:
    """
    Thin wrapper over the ``bedrock-runtime`` client.
    Supports extended thinking and tool use on Anthropic Claude models.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.client = client if client is not None else self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id} ({get_credentials_info()})")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}
            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")
        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str) -> str:
        """Cross-region inference profile id where the model needs one"""
        if model_id.startswith(("us.", "eu.", "ap.")):
            return model_id
        if requires_inference_profile(model_id):
            region_prefix = "eu" if self.region.startswith("eu-") else "us"
            return f"{region_prefix}.{model_id}"
        return get_model_config(model_id).get("base_id", model_id)

    def format_request_body(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Anthropic Messages request body"""
        max_tokens = min(config.max_tokens, get_max_output_tokens(model_id))
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": max_tokens,
            "messages": messages,
        }

        if config.enable_thinking and supports_thinking(model_id):
            budget = min(config.thinking_budget, get_thinking_max_budget(model_id) or config.thinking_budget)
            # budget_tokens must stay below max_tokens with room for the answer
            max_allowed = max_tokens - 4000
            if budget > max_allowed:
                budget = max(max_allowed, 1024)
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        elif config.temperature is not None:
            body["temperature"] = config.temperature

        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
        body.update(config.extra)
        return body

    def generate_response_stream(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Stream a response from Bedrock.
        Yields dictionaries with 'type' and 'content'.
        Types: thinking_start, thinking, thinking_end, text_start, text, text_end,
               tool_use_start, tool_use_delta, tool_use_end, message_end
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()
        body = self.format_request_body(messages, system_prompt, current_model, gen_config, tools=tools)
        model_identifier = self._get_model_identifier(current_model)
        logger.info(f"Streaming from model: {model_identifier}")

        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )

            current_block_type = "text"
            signature: Optional[str] = None

            for event in response["body"]:
                if "chunk" not in event:
                    for key in _STREAM_ERROR_KEYS:
                        if key in event:
                            detail = event[key] or {}
                            raise BedrockError(detail.get("message", key), error_code=key)
                    continue

                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")
                    if current_block_type == "thinking":
                        signature = None
                        yield {"type": "thinking_start", "content": ""}
                    elif current_block_type == "redacted_thinking":
                        yield {"type": "redacted_thinking", "content": "", "data": block.get("data", "")}
                    elif current_block_type == "text":
                        yield {"type": "text_start", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {
                            "type": "tool_use_start",
                            "content": "",
                            "data": {"id": block.get("id", ""), "name": block.get("name", "")},
                        }

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "thinking_delta":
                        if delta.get("thinking"):
                            yield {"type": "thinking", "content": delta["thinking"]}
                    elif delta_type == "signature_delta":
                        signature = (signature or "") + delta.get("signature", "")
                    elif delta_type == "text_delta":
                        if delta.get("text"):
                            yield {"type": "text", "content": delta["text"]}
                    elif delta_type == "input_json_delta":
                        if delta.get("partial_json"):
                            yield {"type": "tool_use_delta", "content": delta["partial_json"]}

                elif event_type == "content_block_stop":
                    if current_block_type == "thinking":
                        yield {"type": "thinking_end", "content": "", "signature": signature}
                        signature = None
                    elif current_block_type == "text":
                        yield {"type": "text_end", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {"type": "tool_use_end", "content": ""}

                elif event_type == "message_delta":
                    yield {
                        "type": "message_end",
                        "content": "",
                        "usage": chunk.get("usage", {}),
                        "stop_reason": chunk.get("delta", {}).get("stop_reason"),
                    }

        except ClientError as e:
            err = BedrockError.from_client_error(e)
            logger.error(f"Bedrock streaming error: {err.error_code} - {err.message}")
            raise err
