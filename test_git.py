#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for git access.

This script validates:
- Safe git command execution and its failure modes
- Branch listing and newest tor-browser branch selection
- Commit log parsing
"""

import logging
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

try:
    from torpatches import (
        fetch_latest_branches,
        latest_commits,
        list_branches,
        newest_tor_browser_branch,
        safe_git_command,
    )
except ImportError as e:
    print(f"ERROR: Failed to import from torpatches.py: {e}")
    print("Make sure torpatches.py is in the same directory as this test script.")
    sys.exit(1)


logger = logging.getLogger("torpatches.test")

BRANCH_OUTPUT = """* master
  remotes/origin/HEAD -> origin/master
  remotes/origin/master
  remotes/origin/tor-browser-60.8.0esr-8.5-1
  remotes/origin/tor-browser-68.1.0esr-9.0-1
  remotes/origin/tor-browser-68.1.0esr-9.5-1
  remotes/origin/tor-browser-68.2.0esr-10.0-1
"""


def test_safe_git_command():
    """Test command results and failure handling."""
    print("Testing safe git command execution...")

    completed = MagicMock(returncode=0, stdout="abc123\n", stderr="")
    with patch("torpatches.subprocess.run", return_value=completed) as mock_run:
        assert safe_git_command(["git", "rev-parse", "HEAD"], Path("."), logger) == (True, "abc123")
        assert mock_run.call_args.kwargs["cwd"] == Path(".")

    failed = MagicMock(returncode=128, stdout="", stderr="fatal: not a git repository\n")
    with patch("torpatches.subprocess.run", return_value=failed):
        assert safe_git_command(["git", "log"], Path("."), logger) == (
            False,
            "fatal: not a git repository",
        )

    timeout = subprocess.TimeoutExpired(cmd="git fetch", timeout=300)
    with patch("torpatches.subprocess.run", side_effect=timeout):
        assert safe_git_command(["git", "fetch"], Path("."), logger) == (False, "Command timed out")

    with patch("torpatches.subprocess.run", side_effect=FileNotFoundError("git")):
        success, output = safe_git_command(["git", "fetch"], Path("."), logger)
        assert not success
        assert "git" in output

    print("  ✅ Safe git command execution works correctly")


def test_fetch_latest_branches():
    """Test git fetch wrapper."""
    print("Testing branch fetch...")

    with patch("torpatches.safe_git_command") as mock_git:
        mock_git.return_value = (True, "")
        assert fetch_latest_branches(Path("."), logger)
        assert mock_git.call_args.args[0] == ["git", "fetch", "origin"]

        mock_git.return_value = (False, "Could not resolve host")
        assert not fetch_latest_branches(Path("."), logger)

    print("  ✅ Branch fetch works correctly")


def test_list_branches():
    """Test parsing 'git branch -a' output."""
    print("Testing branch listing...")

    with patch("torpatches.safe_git_command") as mock_git:
        mock_git.return_value = (True, BRANCH_OUTPUT)
        branches = list_branches(Path("."), logger)
        assert branches[0] == "master", "Current branch marker is stripped"
        assert "remotes/origin/tor-browser-68.2.0esr-10.0-1" in branches
        assert len(branches) == 7

        mock_git.return_value = (False, "fatal")
        assert list_branches(Path("."), logger) == []

    print("  ✅ Branch listing works correctly")


def test_newest_tor_browser_branch():
    """Test branch selection by Tor Browser then Firefox version."""
    print("Testing newest branch selection...")

    branches = [line.strip().lstrip("* ") for line in BRANCH_OUTPUT.splitlines()]
    assert newest_tor_browser_branch(branches) == "remotes/origin/tor-browser-68.2.0esr-10.0-1", (
        "10.0 must rank above 9.5"
    )

    branches = [
        "remotes/origin/tor-browser-60.9.0esr-9.0-1",
        "remotes/origin/tor-browser-68.1.0esr-9.0-1",
    ]
    assert newest_tor_browser_branch(branches) == "remotes/origin/tor-browser-68.1.0esr-9.0-1"

    branches = [
        "remotes/origin/tor-browser-68.1.0esr-9.0-1",
        "remotes/origin/tor-browser-68.1.0esr-9.0-2",
    ]
    assert newest_tor_browser_branch(branches) == "remotes/origin/tor-browser-68.1.0esr-9.0-2"

    assert newest_tor_browser_branch(["master", "remotes/origin/master"]) is None
    assert newest_tor_browser_branch([]) is None

    print("  ✅ Newest branch selection works correctly")


def test_latest_commits():
    """Test parsing of one-line git log output."""
    print("Testing commit log parsing...")

    log_output = "abc1234 Bug 1234: Isolate cache\ndef5678 TB42: mobile tweak\n\n0a1b2c3\n"
    with patch("torpatches.safe_git_command") as mock_git:
        mock_git.return_value = (True, log_output)
        commits = latest_commits(Path("."), "tor-browser-68", 3, logger)

        assert mock_git.call_args.args[0] == [
            "git",
            "log",
            "--oneline",
            "tor-browser-68~3..tor-browser-68",
        ]
        assert commits == [
            {"hash": "abc1234", "message": "Bug 1234: Isolate cache"},
            {"hash": "def5678", "message": "TB42: mobile tweak"},
            {"hash": "0a1b2c3", "message": ""},
        ]

        mock_git.return_value = (False, "fatal: bad revision")
        assert latest_commits(Path("."), "missing", 3, logger) == []

    print("  ✅ Commit log parsing works correctly")


def run_all_tests():
    """Run all git access tests."""
    print("🧪 Running git access tests")
    print("-" * 60)

    tests = [
        test_safe_git_command,
        test_fetch_latest_branches,
        test_list_branches,
        test_newest_tor_browser_branch,
        test_latest_commits,
    ]

    passed = 0
    failed = 0

    for test_func in tests:
        try:
            test_func()
            passed += 1
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1
            import traceback
            traceback.print_exc()

    print("-" * 60)
    print(f"📊 Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
