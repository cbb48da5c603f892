import json
import os
import subprocess

from piperun.errors import EventError
from piperun.models import Event, EventType

DEFAULT_COMPARE_REF = "origin/main"


def parse_event_type(name: str) -> EventType:
    normalized = name.strip().lower().replace("-", "_")
    for event_type in EventType:
        if event_type.value == normalized:
            return event_type
    choices = ", ".join(e.value for e in EventType)
    raise EventError(f"Unknown event '{name}' (expected one of: {choices})")


def make_event(event_type: EventType | str, branch: str | None = None, changed_paths=()) -> Event:
    if isinstance(event_type, str):
        event_type = parse_event_type(event_type)
    if event_type != EventType.PUSH:
        branch = None
    paths = frozenset(_normalize(p) for p in changed_paths if p and p.strip())
    return Event(event_type=event_type, branch=branch, changed_paths=paths)


def _normalize(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _git(args: list[str], workdir: str) -> str:
    try:
        return subprocess.check_output(
            ["git", *args], cwd=workdir, stderr=subprocess.DEVNULL, text=True
        ).strip()
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError) as e:
        raise EventError(f"git {' '.join(args)} failed in {workdir}") from e


def current_branch(workdir: str = ".") -> str | None:
    try:
        branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], workdir)
    except EventError:
        return None
    return None if branch == "HEAD" else branch


def changed_paths_from_git(workdir: str = ".", base: str | None = None) -> list[str]:
    """Paths changed since `base`, including uncommitted and untracked files.

    Without a base, compares against the merge-base with origin/main and
    falls back to HEAD~1 when there is no such remote.
    """
    if base is None:
        try:
            base = _git(["merge-base", DEFAULT_COMPARE_REF, "HEAD"], workdir)
        except EventError:
            base = "HEAD~1"

    changed = set(_git(["diff", "--name-only", base], workdir).splitlines())
    changed.update(_git(["ls-files", "--others", "--exclude-standard"], workdir).splitlines())
    return sorted(p for p in changed if p)


def event_from_github_env(environ: dict | None = None) -> Event:
    """Build the event from the variables a GitHub Actions runner exports."""
    environ = os.environ if environ is None else environ
    name = environ.get("GITHUB_EVENT_NAME")
    if not name:
        raise EventError("GITHUB_EVENT_NAME is not set")
    event_type = parse_event_type(name)

    payload = {}
    payload_path = environ.get("GITHUB_EVENT_PATH")
    if payload_path:
        try:
            with open(payload_path) as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise EventError(f"Cannot read event payload {payload_path}: {e}") from e

    changed = set()
    for commit in payload.get("commits") or []:
        for key in ("added", "modified", "removed"):
            changed.update(commit.get(key) or [])

    branch = environ.get("GITHUB_REF_NAME")
    if not branch and environ.get("GITHUB_REF", "").startswith("refs/heads/"):
        branch = environ["GITHUB_REF"][len("refs/heads/"):]

    return make_event(event_type, branch=branch or None, changed_paths=changed)
