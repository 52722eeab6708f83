"""
Configuration module for Bedrock Repro.
Handles environment variables, model settings, repro (verification) settings
and the prompt templates used by the agent.
"""

import os
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv, set_key

# Load environment variables from .env file
load_dotenv()

env_path = ".env"


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, "")
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "")
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _env_list(name: str, default: str) -> List[str]:
    return [v.strip().lower() for v in os.getenv(name, default).split(",") if v.strip()]


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    region: str = os.getenv("AWS_REGION", "us-east-1")
    profile_name: str = os.getenv("AWS_PROFILE", "")
    max_tokens: int = _env_int("MAX_TOKENS", 8192)
    temperature: float = _env_float("TEMPERATURE", 0.0)
    # Hard budget on model calls per session
    max_calls: int = _env_int("MAX_MODEL_CALLS", 30)
    # botocore attempts before a throttled call surfaces as RetryError
    max_retries: int = _env_int("BEDROCK_MAX_RETRIES", 4)


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Repro"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "bedrock_repro.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    max_iterations: int = _env_int("MAX_ITERATIONS", 50)
    stream_responses: bool = os.getenv("STREAM_RESPONSES", "true").lower() == "true"
    # Conversation window sent to the model
    history_max_messages: int = _env_int("HISTORY_MAX_MESSAGES", 15)
    history_keep_first: int = _env_int("HISTORY_KEEP_FIRST", 2)
    max_format_retries: int = _env_int("MAX_FORMAT_RETRIES", 3)
    # Edit transaction diagnostics
    diagnostics_settle_delay: float = _env_float("DIAGNOSTICS_SETTLE_DELAY", 2.0)
    diagnostics_timeout: float = _env_float("DIAGNOSTICS_TIMEOUT", 10.0)
    diagnostic_ignore_sources: List[str] = field(
        default_factory=lambda: _env_list("DIAGNOSTIC_IGNORE_SOURCES", "cspell,spell,markdownlint")
    )
    # Optional formatter run on each edited file, e.g. "black -q {path}"
    format_command: str = os.getenv("FORMAT_COMMAND", "")
    # Pause after a verification pass so ports and file handles are released
    verify_cooldown: float = _env_float("VERIFY_COOLDOWN", 5.0)


@dataclass
class ReproConfig:
    """Build/test commands used to reproduce and verify the issue"""
    build_command: str = os.getenv("REPRO_BUILD_COMMAND", "")
    test_command: str = os.getenv("REPRO_TEST_COMMAND", "")
    expected_instruction: str = os.getenv("REPRO_EXPECTED_INSTRUCTION", "")
    expected_status: str = os.getenv("REPRO_EXPECTED_STATUS", "")
    expected_body: str = os.getenv("REPRO_EXPECTED_BODY", "")
    build_ready_text: str = os.getenv("REPRO_BUILD_READY_TEXT", "")
    # Timeouts in seconds; 0 means "use the verifier default"
    build_inactivity_timeout: float = _env_float("REPRO_BUILD_INACTIVITY_TIMEOUT", 0)
    build_process_timeout: float = _env_float("REPRO_BUILD_PROCESS_TIMEOUT", 0)
    test_inactivity_timeout: float = _env_float("REPRO_TEST_INACTIVITY_TIMEOUT", 0)
    test_process_timeout: float = _env_float("REPRO_TEST_PROCESS_TIMEOUT", 0)


@dataclass
class AgentTemplates:
    """Prompt templates and parsing settings for the agent.

    Placeholders use ``{name}`` and are filled by ``agent.prompts.interpolate``.
    """
    system_template: str = ""
    instance_template: str = ""
    state_template: str = ""
    next_step_template: str = ""
    next_step_no_output_template: str = ""
    format_error_template: str = ""
    demonstration_template: Optional[str] = None
    post_reverted_diff_template: str = ""
    post_applied_diff_template: str = ""
    parse_function_name: str = "thought_action_parser"
    done_function: str = "Done"
    demonstrations: List[Dict[str, Any]] = field(default_factory=list)
    auxiliary_vars: Dict[str, str] = field(default_factory=dict)


# Create global config instances
model_config = ModelConfig()
app_config = AppConfig()
repro_config = ReproConfig()


def get_repro_values(config: Optional[ReproConfig] = None) -> Dict[str, str]:
    """Current repro values as shown to / edited by the host UI."""
    config = config or repro_config
    return {
        "build_command": config.build_command,
        "test_command": config.test_command,
        "expected_instruction": config.expected_instruction,
        "expected_status": config.expected_status,
        "expected_body": config.expected_body,
    }


def save_repro_values(values: Dict[str, str], persist: bool = True, config: Optional[ReproConfig] = None) -> None:
    """Update repro values in memory and optionally write them to .env"""
    config = config or repro_config
    env_names = {
        "build_command": "REPRO_BUILD_COMMAND",
        "test_command": "REPRO_TEST_COMMAND",
        "expected_instruction": "REPRO_EXPECTED_INSTRUCTION",
        "expected_status": "REPRO_EXPECTED_STATUS",
        "expected_body": "REPRO_EXPECTED_BODY",
    }
    for key, env_name in env_names.items():
        if key not in values:
            continue
        value = values[key] or ""
        setattr(config, key, value)
        if persist:
            os.environ[env_name] = value
            set_key(env_path, env_name, value)
