import json
import shutil
import subprocess

import pytest

from piperun.errors import EventError
from piperun.events import (
    changed_paths_from_git, current_branch, event_from_github_env, make_event, parse_event_type,
)
from piperun.models import EventType


def test_parse_event_type():
    assert parse_event_type("push") == EventType.PUSH
    assert parse_event_type("pull-request") == EventType.PULL_REQUEST
    with pytest.raises(EventError, match="Unknown event"):
        parse_event_type("release")


def test_make_event_normalizes_paths():
    event = make_event("push", branch="main", changed_paths=["./src/lib.rs", "docs\\a.md", " ", ""])
    assert event.changed_paths == frozenset({"src/lib.rs", "docs/a.md"})
    assert event.branch == "main"


def test_pull_request_has_no_branch():
    assert make_event(EventType.PULL_REQUEST, branch="main").branch is None


def test_event_from_github_push_payload(tmp_path):
    payload = tmp_path / "event.json"
    payload.write_text(json.dumps({
        "commits": [
            {"added": ["src/new.rs"], "modified": ["README.md"], "removed": []},
            {"added": [], "modified": [], "removed": ["old.txt"]},
        ]
    }))
    event = event_from_github_env({
        "GITHUB_EVENT_NAME": "push",
        "GITHUB_EVENT_PATH": str(payload),
        "GITHUB_REF": "refs/heads/main",
    })
    assert event.event_type == EventType.PUSH
    assert event.branch == "main"
    assert event.changed_paths == frozenset({"src/new.rs", "README.md", "old.txt"})


def test_event_from_github_pull_request_without_payload():
    event = event_from_github_env({"GITHUB_EVENT_NAME": "pull_request", "GITHUB_REF_NAME": "12/merge"})
    assert event.event_type == EventType.PULL_REQUEST
    assert event.changed_paths == frozenset()


def test_event_from_github_env_requires_event_name():
    with pytest.raises(EventError, match="GITHUB_EVENT_NAME"):
        event_from_github_env({})


def test_event_from_github_bad_payload(tmp_path):
    payload = tmp_path / "event.json"
    payload.write_text("{not json")
    with pytest.raises(EventError, match="Cannot read event payload"):
        event_from_github_env({"GITHUB_EVENT_NAME": "push", "GITHUB_EVENT_PATH": str(payload)})


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo, *args):
    subprocess.run(
        ["git", "-c", "user.name=t", "-c", "user.email=t@example.com", *args],
        cwd=repo, check=True, capture_output=True,
    )


@requires_git
def test_changed_paths_from_git(tmp_path):
    _git(tmp_path, "init", "-b", "main")
    (tmp_path / "README.md").write_text("hi\n")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-m", "first")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "lib.rs").write_text("fn main() {}\n")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-m", "second")
    (tmp_path / "README.md").write_text("changed\n")
    (tmp_path / "untracked.txt").write_text("new\n")

    assert changed_paths_from_git(str(tmp_path)) == ["README.md", "src/lib.rs", "untracked.txt"]
    assert changed_paths_from_git(str(tmp_path), base="HEAD") == ["README.md", "untracked.txt"]
    assert current_branch(str(tmp_path)) == "main"


def test_changed_paths_outside_a_repository(tmp_path):
    with pytest.raises(EventError):
        changed_paths_from_git(str(tmp_path), base="HEAD")
    assert current_branch(str(tmp_path)) is None
