"""
Claude SDK Client Configuration
===============================

Functions for creating and configuring the Claude Agent SDK client used by
the execution provider.
"""

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from dotenv import load_dotenv

from env_constants import API_ENV_VARS
from featureforge_paths import ensure_featureforge_dir, get_claude_settings_path

# Load environment variables from .env file if present
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert software engineer implementing a feature in an existing codebase."
)
DEFAULT_MAX_TURNS = 300

# Built-in tools available to agents.
BUILTIN_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebFetch",
    "WebSearch",
]


def convert_model_for_vertex(model: str) -> str:
    """
    Convert model name format for Vertex AI compatibility.

    Vertex AI uses @ to separate model name from version (claude-opus-4-5@20251101)
    while the Anthropic API uses - (claude-opus-4-5-20251101). Only applied
    when CLAUDE_CODE_USE_VERTEX=1.
    """
    if os.getenv("CLAUDE_CODE_USE_VERTEX") != "1":
        return model

    match = re.match(r"^(claude-.+)-(\d{8})$", model)
    if match:
        base_name, date = match.groups()
        return f"{base_name}@{date}"
    return model


def get_sdk_env() -> dict[str, str]:
    """API configuration overrides forwarded to the Claude CLI subprocess."""
    sdk_env = {}
    for var in API_ENV_VARS:
        value = os.getenv(var)
        if value:
            sdk_env[var] = value
    return sdk_env


def write_agent_settings(workdir: Path, allowed_tools: list[str]) -> Path:
    """
    Write the sandbox/permission settings file for an agent working in ``workdir``.

    File operations are restricted to the working directory via relative
    ``./**`` patterns since the agent's cwd is set to ``workdir``.
    """
    permissions_list = [
        "Read(./**)",
        "Write(./**)",
        "Edit(./**)",
        "Glob(./**)",
        "Grep(./**)",
        "Bash(*)",
        "WebFetch(*)",
        "WebSearch(*)",
    ]
    permissions_list.extend(t for t in allowed_tools if t.startswith("mcp__"))

    security_settings = {
        "sandbox": {"enabled": True, "autoAllowBashIfSandboxed": True},
        "permissions": {
            "defaultMode": "acceptEdits",
            "allow": permissions_list,
        },
    }

    ensure_featureforge_dir(workdir)
    settings_file = get_claude_settings_path(workdir)
    with open(settings_file, "w", encoding="utf-8") as f:
        json.dump(security_settings, f, indent=2)
    logger.debug("Wrote agent settings to %s", settings_file)
    return settings_file


def create_client(
    workdir: Path,
    model: str,
    allowed_tools: list[str] | None = None,
    system_prompt: str | None = None,
    max_turns: int | None = None,
    mcp_servers: dict[str, Any] | None = None,
) -> ClaudeSDKClient:
    """
    Create a Claude Agent SDK client bound to a working directory.

    Args:
        workdir: Directory the agent operates in (project root or worktree)
        model: Full Claude model id
        allowed_tools: Tools the model may see; defaults to BUILTIN_TOOLS
        system_prompt: Optional system prompt override
        max_turns: Conversation turn limit
        mcp_servers: Extra MCP server configs, keyed by server name

    Returns:
        Configured ClaudeSDKClient (not yet connected)
    """
    workdir = Path(workdir).resolve()
    tools = list(allowed_tools) if allowed_tools else list(BUILTIN_TOOLS)
    settings_file = write_agent_settings(workdir, tools)

    # Use system Claude CLI instead of bundled one when available
    system_cli = shutil.which("claude")
    if not system_cli:
        logger.debug("System 'claude' CLI not found, using bundled CLI")

    sdk_env = get_sdk_env()
    base_url = sdk_env.get("ANTHROPIC_BASE_URL", "")
    is_vertex = sdk_env.get("CLAUDE_CODE_USE_VERTEX") == "1"
    model = convert_model_for_vertex(model)
    if sdk_env:
        logger.info("API overrides: %s", ", ".join(sdk_env.keys()))
        if is_vertex:
            logger.info(
                "Vertex AI mode: project '%s', region '%s', model '%s'",
                sdk_env.get("ANTHROPIC_VERTEX_PROJECT_ID", "unknown"),
                sdk_env.get("CLOUD_ML_REGION", "unknown"),
                model,
            )
        elif base_url:
            logger.info("Alternative API endpoint: %s", base_url)

    return ClaudeSDKClient(
        options=ClaudeAgentOptions(
            model=model,
            cli_path=system_cli,
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            setting_sources=["project"],  # skills, commands and CLAUDE.md from the workdir
            max_buffer_size=10 * 1024 * 1024,
            allowed_tools=tools,
            mcp_servers=mcp_servers or {},  # type: ignore[arg-type]  # SDK accepts dict config at runtime
            max_turns=max_turns or DEFAULT_MAX_TURNS,
            cwd=str(workdir),
            settings=str(settings_file.resolve()),
            env=sdk_env,
        )
    )
