"""
Settings Registry Module
========================

Global key-value settings for FeatureForge, plus model resolution.
Uses SQLite database stored at ~/.featureforge/registry.db
(override the directory with FEATUREFORGE_CONFIG_DIR).
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Column, DateTime, String, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

# Module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Model Configuration (Single Source of Truth)
# =============================================================================

# Short aliases accepted in a job's model selector
MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

# Default model
# Respect ANTHROPIC_DEFAULT_OPUS_MODEL env var for Foundry/custom deployments
# Guard against empty/whitespace values by trimming and falling back when blank
_env_default_model = os.getenv("ANTHROPIC_DEFAULT_OPUS_MODEL")
if _env_default_model is not None:
    _env_default_model = _env_default_model.strip()
DEFAULT_MODEL = _env_default_model or MODEL_ALIASES["opus"]

# Auto mode defaults
DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_USE_WORKTREES = True
DEFAULT_APPROVAL_TIMEOUT_MINUTES = 30

# SQLite connection settings
SQLITE_TIMEOUT = 30  # seconds to wait for database lock
SQLITE_MAX_RETRIES = 3  # number of retry attempts on busy database


def resolve_model(model_key: str | None, default_model: str = DEFAULT_MODEL) -> str:
    """
    Resolve a model alias or full model id to a full model id.

    - Empty/None -> default model
    - Full Claude model id (contains "claude-") -> passed through unchanged
    - Known alias (haiku/sonnet/opus) -> mapped id
    - Anything else -> default model (logged)
    """
    if not model_key or not model_key.strip():
        return default_model

    model_key = model_key.strip()
    if "claude-" in model_key:
        return model_key

    resolved = MODEL_ALIASES.get(model_key.lower())
    if resolved:
        return resolved

    logger.warning("Unknown model key '%s', using default '%s'", model_key, default_model)
    return default_model


# =============================================================================
# Exceptions
# =============================================================================

class RegistryError(Exception):
    """Base registry exception."""
    pass


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class Base(DeclarativeBase):
    """SQLAlchemy 2.0 style declarative base."""
    pass


class Settings(Base):
    """SQLAlchemy model for global settings (key-value store)."""
    __tablename__ = "settings"

    key = Column(String(50), primary_key=True)
    value = Column(String(2000), nullable=False)
    updated_at = Column(DateTime, nullable=False)


# =============================================================================
# Database Connection
# =============================================================================

# Module-level singleton for database engine with thread-safe initialization
_engine = None
_SessionLocal = None
_engine_lock = threading.Lock()


def get_config_dir() -> Path:
    """
    Get the config directory: $FEATUREFORGE_CONFIG_DIR or ~/.featureforge/

    Returns:
        Path to the config directory (created if it doesn't exist)
    """
    override = os.getenv("FEATUREFORGE_CONFIG_DIR")
    config_dir = Path(override) if override else Path.home() / ".featureforge"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_registry_path() -> Path:
    """Get the path to the registry database."""
    return get_config_dir() / "registry.db"


def _get_engine():
    """
    Get or create the database engine (thread-safe singleton pattern).

    Returns:
        Tuple of (engine, SessionLocal)
    """
    global _engine, _SessionLocal

    # Double-checked locking for thread safety
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                db_path = get_registry_path()
                db_url = f"sqlite:///{db_path.as_posix()}"
                _engine = create_engine(
                    db_url,
                    connect_args={
                        "check_same_thread": False,
                        "timeout": SQLITE_TIMEOUT,
                    }
                )
                Base.metadata.create_all(bind=_engine)
                _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
                logger.debug("Initialized registry database at: %s", db_path)

    return _engine, _SessionLocal


def reset_engine() -> None:
    """Dispose the cached engine so the next access re-reads the config dir."""
    global _engine, _SessionLocal
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _SessionLocal = None


@contextmanager
def _get_session():
    """
    Context manager for database sessions with automatic commit/rollback.

    Yields:
        SQLAlchemy session
    """
    _, SessionLocal = _get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _with_retry(func, *args, **kwargs):
    """
    Execute a database operation with retry logic for busy database.

    Raises:
        Last exception if all retries fail
    """
    last_error = None
    for attempt in range(SQLITE_MAX_RETRIES):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_error = e
            error_str = str(e).lower()
            if "database is locked" in error_str or "sqlite_busy" in error_str:
                if attempt < SQLITE_MAX_RETRIES - 1:
                    wait_time = (2 ** attempt) * 0.1  # Exponential backoff: 0.1s, 0.2s, 0.4s
                    logger.warning(
                        "Database busy, retrying in %.1fs (attempt %d/%d)",
                        wait_time, attempt + 1, SQLITE_MAX_RETRIES
                    )
                    time.sleep(wait_time)
                    continue
            raise
    raise last_error


# =============================================================================
# Settings CRUD Functions
# =============================================================================

def get_setting(key: str, default: str | None = None) -> str | None:
    """
    Get a setting value by key.

    Args:
        key: The setting key.
        default: Default value if setting doesn't exist or on DB error.

    Returns:
        The setting value, or default if not found or on error.
    """
    try:
        _, SessionLocal = _get_engine()
        session = SessionLocal()
        try:
            setting = session.query(Settings).filter(Settings.key == key).first()
            return setting.value if setting else default
        finally:
            session.close()
    except Exception as e:
        logger.warning("Failed to read setting '%s': %s", key, e)
        return default


def _set_setting(key: str, value: str) -> None:
    with _get_session() as session:
        setting = session.query(Settings).filter(Settings.key == key).first()
        if setting:
            setting.value = value
            setting.updated_at = datetime.now()
        else:
            session.add(Settings(key=key, value=value, updated_at=datetime.now()))


def set_setting(key: str, value: str) -> None:
    """
    Set a setting value (creates or updates).

    Args:
        key: The setting key.
        value: The setting value.
    """
    _with_retry(_set_setting, key, value)
    logger.debug("Set setting '%s' = '%s'", key, value)


def delete_setting(key: str) -> None:
    """Delete a setting by key. No-op if key doesn't exist."""
    try:
        with _get_session() as session:
            setting = session.query(Settings).filter(Settings.key == key).first()
            if setting:
                session.delete(setting)
                logger.debug("Deleted setting '%s'", key)
    except Exception as e:
        logger.warning("Failed to delete setting '%s': %s", key, e)


def get_all_settings() -> dict[str, str]:
    """
    Get all settings as a dictionary.

    Returns:
        Dictionary mapping setting keys to values.
    """
    try:
        _, SessionLocal = _get_engine()
        session = SessionLocal()
        try:
            settings = session.query(Settings).all()
            return {s.key: s.value for s in settings}
        finally:
            session.close()
    except Exception as e:
        logger.warning("Failed to read settings: %s", e)
        return {}


# =============================================================================
# Auto Mode Settings
# =============================================================================

def _parse_int(value: str | None, default: int, low: int, high: int) -> int:
    try:
        return min(max(int(value), low), high) if value is not None else default
    except (ValueError, TypeError):
        return default


def get_auto_mode_settings() -> dict[str, Any]:
    """
    Read the settings that drive auto mode, with defaults applied.

    Returns:
        Dict with model, max_concurrency, use_worktrees,
        approval_timeout_minutes and mcp_servers.
    """
    settings = get_all_settings()

    mcp_servers: dict[str, Any] = {}
    raw_mcp = settings.get("mcp_servers")
    if raw_mcp:
        try:
            parsed = json.loads(raw_mcp)
            if isinstance(parsed, dict):
                mcp_servers = parsed
            else:
                logger.warning("Ignoring mcp_servers setting: expected a JSON object")
        except json.JSONDecodeError as e:
            logger.warning("Ignoring malformed mcp_servers setting: %s", e)

    return {
        "model": settings.get("model") or DEFAULT_MODEL,
        "max_concurrency": _parse_int(settings.get("max_concurrency"), DEFAULT_MAX_CONCURRENCY, 1, 10),
        "use_worktrees": (settings.get("use_worktrees") or str(DEFAULT_USE_WORKTREES)).lower() == "true",
        "approval_timeout_minutes": _parse_int(
            settings.get("approval_timeout_minutes"), DEFAULT_APPROVAL_TIMEOUT_MINUTES, 1, 24 * 60
        ),
        "mcp_servers": mcp_servers,
    }
