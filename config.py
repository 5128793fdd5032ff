"""
Configuration module for Threadloop.
Environment variables, model specifications, agent-loop tunables and app settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS credentials for the Bedrock transport"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model selection and sampling options, frozen per turn by the controller"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "32000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    enable_thinking: bool = _env_bool("ENABLE_THINKING", "true")
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "16000"))


@dataclass
class AppConfig:
    """Application-level settings"""
    title: str = "Threadloop"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    threads_dir: str = os.getenv(
        "THREADS_DIR", os.path.join(os.path.expanduser("~"), ".threadloop", "threads")
    )
    chat_mode: str = os.getenv("CHAT_MODE", "agent")
    # Global pre-authorisation per approval kind
    auto_approve_edits: bool = _env_bool("AUTO_APPROVE_EDITS")
    auto_approve_terminal: bool = _env_bool("AUTO_APPROVE_TERMINAL")
    auto_approve_mcp: bool = _env_bool("AUTO_APPROVE_MCP")

    def auto_approve(self) -> Dict[str, bool]:
        return {
            "edits": self.auto_approve_edits,
            "terminal": self.auto_approve_terminal,
            "MCP tools": self.auto_approve_mcp,
        }


@dataclass
class LoopConfig:
    """Retry, throttle and persistence tunables of the agent loop"""
    chat_retries: int = int(os.getenv("CHAT_RETRIES", "5"))
    base_retry_delay_ms: int = int(os.getenv("BASE_RETRY_DELAY_MS", "3000"))
    retry_multiplier: float = float(os.getenv("RETRY_MULTIPLIER", "1.5"))
    max_retry_delay_ms: int = int(os.getenv("MAX_RETRY_DELAY_MS", "30000"))
    context_retries: int = int(os.getenv("CONTEXT_RETRIES", "2"))
    rate_limit_base_backoff_ms: int = int(os.getenv("RATE_LIMIT_BASE_BACKOFF_MS", "2000"))
    rate_limit_max_backoff_ms: int = int(os.getenv("RATE_LIMIT_MAX_BACKOFF_MS", "30000"))
    stream_state_throttle_ms: int = int(os.getenv("STREAM_STATE_THROTTLE_MS", "50"))
    persist_debounce_ms: int = int(os.getenv("PERSIST_DEBOUNCE_MS", "1000"))
    command_timeout_s: int = int(os.getenv("COMMAND_TIMEOUT_S", "120"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only tool_use capable models are listed; the agent loop needs it.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-5-20251101-v1:0",
        "base_id": "anthropic.claude-opus-4-5-20251101-v1:0",
        "name": "Claude Opus 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
        "supports_thinking": False,
        "thinking_max_budget": 0,
    },
]

# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()
loop_config = LoopConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Full spec for a model; unknown ids get a conservative fallback dict."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 4096,
        "requires_profile": False,
        "supports_thinking": False,
        "thinking_max_budget": 0,
    }


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def supports_thinking(model_id: str) -> bool:
    return get_model_config(model_id).get("supports_thinking", False)


def get_thinking_max_budget(model_id: str) -> int:
    return get_model_config(model_id).get("thinking_max_budget", 0)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
