"""
Shared Environment Variable Constants
======================================

Single source of truth for environment variables read by FeatureForge.

``API_ENV_VARS`` are forwarded to the Claude CLI subprocess by ``client.py``
so that alternative API endpoints (Vertex AI, GLM, Ollama) can be used
without touching the user's global Claude Code settings.
"""

import os

API_ENV_VARS: list[str] = [
    # Core API configuration
    "ANTHROPIC_BASE_URL",              # Custom API endpoint
    "ANTHROPIC_AUTH_TOKEN",            # API authentication token
    "ANTHROPIC_API_KEY",               # Direct API key
    "API_TIMEOUT_MS",                  # Request timeout in milliseconds
    # Model tier overrides
    "ANTHROPIC_DEFAULT_SONNET_MODEL",  # Model override for Sonnet
    "ANTHROPIC_DEFAULT_OPUS_MODEL",    # Model override for Opus
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",   # Model override for Haiku
    # Vertex AI configuration
    "CLAUDE_CODE_USE_VERTEX",          # Enable Vertex AI mode (set to "1")
    "CLOUD_ML_REGION",                 # GCP region (e.g., us-east5)
    "ANTHROPIC_VERTEX_PROJECT_ID",     # GCP project ID
]

# Set to "true" or "1" to append every raw stream event to raw-output.jsonl
DEBUG_RAW_OUTPUT_VAR = "FEATUREFORGE_DEBUG_RAW_OUTPUT"


def is_raw_output_enabled() -> bool:
    """Whether raw stream events should be persisted for debugging."""
    return os.getenv(DEBUG_RAW_OUTPUT_VAR, "").strip().lower() in ("true", "1")
