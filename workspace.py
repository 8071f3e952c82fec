"""
Workspace Resolution
====================

Path policy for agent working directories and git worktree lookup.

An agent may only be pointed at an existing directory that is not (and
does not lie inside) one of the sensitive credential directories under
the user's home.
"""

import asyncio
import logging
from pathlib import Path

from errors import WorkspaceValidationError

logger = logging.getLogger(__name__)

# Directories under $HOME that never become an agent working directory.
SENSITIVE_DIRECTORIES = {
    ".ssh",
    ".aws",
    ".azure",
    ".kube",
    ".gnupg",
    ".gpg",
    ".password-store",
    ".docker",
    ".config/gcloud",
    ".config/gh",
    ".terraform",
}


def _is_inside_sensitive_directory(path: Path) -> str | None:
    """Return the sensitive directory containing ``path``, if any."""
    home_dir = Path.home()
    for sensitive in SENSITIVE_DIRECTORIES:
        try:
            sensitive_path = (home_dir / sensitive).resolve()
        except (OSError, ValueError):
            continue
        if path == sensitive_path or path.is_relative_to(sensitive_path):
            return sensitive
    return None


def validate_working_directory(path: str | Path) -> Path:
    """
    Check a working directory against the path policy.

    Returns:
        The resolved path.

    Raises:
        WorkspaceValidationError: if the path is missing, not a directory,
            or inside a sensitive directory.
    """
    try:
        resolved = Path(path).expanduser().resolve()
    except (OSError, ValueError) as e:
        raise WorkspaceValidationError(f"Invalid working directory '{path}': {e}") from e

    if not resolved.exists():
        raise WorkspaceValidationError(f"Working directory does not exist: {resolved}")
    if not resolved.is_dir():
        raise WorkspaceValidationError(f"Working directory is not a directory: {resolved}")

    sensitive = _is_inside_sensitive_directory(resolved)
    if sensitive:
        raise WorkspaceValidationError(
            f"Working directory is inside a sensitive directory ({sensitive}): {resolved}"
        )
    return resolved


def parse_worktree_list(output: str, project_path: Path, branch_name: str) -> Path | None:
    """Find the worktree for ``branch_name`` in ``git worktree list --porcelain`` output."""
    current_path: str | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            current_path = line[len("worktree "):].strip()
        elif line.startswith("branch ") and current_path:
            branch = line[len("branch "):].strip()
            if branch.startswith("refs/heads/"):
                branch = branch[len("refs/heads/"):]
            if branch == branch_name:
                worktree = Path(current_path)
                if not worktree.is_absolute():
                    worktree = Path(project_path) / worktree
                return worktree.resolve()
        elif not line.strip():
            current_path = None
    return None


async def find_worktree_for_branch(project_path: str | Path, branch_name: str) -> Path | None:
    """
    Locate an existing git worktree checked out on ``branch_name``.

    Returns None when the branch has no worktree or git is unavailable.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "worktree", "list", "--porcelain",
            cwd=str(project_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        logger.debug("git worktree lookup failed in %s: %s", project_path, e)
        return None

    if proc.returncode != 0:
        logger.debug(
            "git worktree list failed in %s: %s",
            project_path, stderr.decode("utf-8", errors="replace").strip(),
        )
        return None

    return parse_worktree_list(
        stdout.decode("utf-8", errors="replace"), Path(project_path), branch_name
    )
