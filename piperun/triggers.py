"""Trigger filters: decide whether a repository event starts a workflow run.

Patterns follow the GitHub filter-pattern dialect, case-sensitive and
anchored to the whole path:

    *     any run of characters except "/"
    **    any run of characters, "/" included
    **/   zero or more leading directories
    ?     one character except "/"
    [...] a character class
"""
import re
from functools import lru_cache

from piperun.models import Event, EventType, TriggerSpec, Workflow


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out))


def glob_match(path: str, pattern: str) -> bool:
    return _compile(pattern).fullmatch(path) is not None


def matches_any(path: str, patterns) -> bool:
    return any(glob_match(path, p) for p in patterns)


def evaluate_trigger(event: Event, trigger: TriggerSpec) -> bool:
    if event.event_type != trigger.event_type:
        return False

    if event.event_type == EventType.PUSH:
        if trigger.branch_filter:
            if event.branch is None or not matches_any(event.branch, trigger.branch_filter):
                return False
        if trigger.branch_ignore_filter and event.branch is not None:
            if matches_any(event.branch, trigger.branch_ignore_filter):
                return False

    # No changed paths means the diff is unknown; path filters can't apply.
    if not event.changed_paths:
        return True

    candidates = [p for p in event.changed_paths if not matches_any(p, trigger.path_exclude_filter)]
    if trigger.path_include_filter:
        candidates = [p for p in candidates if matches_any(p, trigger.path_include_filter)]
    return len(candidates) > 0


def workflow_triggered(event: Event, workflow: Workflow) -> bool:
    return any(evaluate_trigger(event, t) for t in workflow.triggers)
