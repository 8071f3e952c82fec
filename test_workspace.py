"""
Workspace Tests
===============

Path policy and worktree lookup.
Run with: pytest test_workspace.py
"""

import asyncio

import pytest

from errors import WorkspaceValidationError
from workspace import find_worktree_for_branch, parse_worktree_list, validate_working_directory

PORCELAIN = """worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repo/.worktrees/feature-login
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/login

worktree /repo/.worktrees/detached
HEAD 3333333333333333333333333333333333333333
detached
"""


def test_parse_worktree_list():
    found = parse_worktree_list(PORCELAIN, "/repo", "feature/login")
    assert found.name == "feature-login"
    assert parse_worktree_list(PORCELAIN, "/repo", "main").name == "repo"
    assert parse_worktree_list(PORCELAIN, "/repo", "feature/other") is None
    assert parse_worktree_list("", "/repo", "main") is None


def test_valid_directory(project_dir):
    assert validate_working_directory(project_dir) == project_dir.resolve()


def test_missing_and_file_paths(tmp_path):
    with pytest.raises(WorkspaceValidationError):
        validate_working_directory(tmp_path / "missing")

    file_path = tmp_path / "file.txt"
    file_path.write_text("x")
    with pytest.raises(WorkspaceValidationError):
        validate_working_directory(file_path)


def test_sensitive_directories_blocked(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    keys = tmp_path / ".ssh" / "keys"
    keys.mkdir(parents=True)
    gcloud = tmp_path / ".config" / "gcloud"
    gcloud.mkdir(parents=True)

    with pytest.raises(WorkspaceValidationError, match=r"\.ssh"):
        validate_working_directory(keys)
    with pytest.raises(WorkspaceValidationError):
        validate_working_directory(gcloud)
    assert validate_working_directory(tmp_path / ".config") == (tmp_path / ".config").resolve()


def test_worktree_lookup_outside_git_repo(project_dir):
    assert asyncio.run(find_worktree_for_branch(project_dir, "feature/x")) is None
