"""
Runtime configuration for the agent core.

Values are read from environment variables prefixed with ``CODEAGENT_`` (or a
local ``.env`` file). Collections such as ``CODEAGENT_PERMISSION_POLICY`` are
given as JSON.
"""

from enum import Enum
from typing import Dict, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PermissionMode(str, Enum):
    """How a permission is resolved when a tool asks for it"""
    ALLOW = "allow"
    DENY = "deny"
    PROMPT = "prompt"
    PROMPT_SESSION = "prompt_session"


def _default_permission_policy() -> Dict[str, PermissionMode]:
    return {
        "filesystem.read": PermissionMode.ALLOW,
        "filesystem.write": PermissionMode.PROMPT,
        "terminal.execute": PermissionMode.PROMPT,
        "interaction.userInput": PermissionMode.ALLOW,
        "editor.read": PermissionMode.ALLOW,
        "editor.write": PermissionMode.PROMPT_SESSION,
        "workspace.info.read": PermissionMode.ALLOW,
    }


class AgentSettings(BaseSettings):
    """Agent core settings with environment variable support."""

    # Loop
    max_iterations: int = Field(default=10, ge=1, description="Iteration ceiling per run")
    history_window: int = Field(default=6, ge=1, description="History entries sent to each reasoning call")
    no_capability_action: Literal["respond", "continue"] = Field(
        default="respond",
        description="What the loop does when reasoning selects no capability",
    )
    response_tool_names: List[str] = Field(
        default_factory=lambda: ["respond", "send_response_to_user", "final_answer"],
        description="Tools whose output is delivered to the user as the final answer",
    )

    # Timeouts
    reasoning_timeout_seconds: float = Field(default=120.0, gt=0)
    tool_timeout_seconds: float = Field(default=60.0, gt=0)
    user_input_timeout_seconds: float = Field(default=300.0, gt=0)

    # Events and memory
    event_history_size: int = Field(default=200, ge=1)
    short_term_capacity: int = Field(default=20, ge=1)
    long_term_search_limit: int = Field(default=5, ge=1)
    persist_final_answers: bool = Field(default=True, description="Write final answers to long-term memory")

    # Permissions
    permission_policy: Dict[str, PermissionMode] = Field(default_factory=_default_permission_policy)
    default_permission_mode: PermissionMode = Field(default=PermissionMode.DENY)

    # Router
    direct_action_confidence: float = Field(default=0.75, ge=0.0, le=1.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    service_name: str = Field(default="codeagent")
    environment: str = Field(default="development")

    model_config = SettingsConfigDict(
        env_prefix="CODEAGENT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def load_settings(**overrides) -> AgentSettings:
    """Build settings from the environment, applying explicit overrides on top"""
    return AgentSettings(**overrides)
