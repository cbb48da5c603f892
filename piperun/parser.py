import re
import sys

import yaml

from piperun.errors import ConfigurationError
from piperun.models import EventType, Job, SecretRef, Step, StepKind, TriggerSpec, Workflow

CHECKOUT_ACTION = "actions/checkout"

IGNORED_JOB_KEYS = ("needs", "strategy", "if", "services", "container", "outputs", "permissions")

_SECRET_RE = re.compile(r"^\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}$")


def parse_workflow(path: str) -> Workflow:
    try:
        with open(path) as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read workflow file {path}: {e.strerror}") from e
    return parse_workflow_text(text)


def parse_workflow_text(text: str) -> Workflow:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid workflow file: expected YAML mapping, got {type(raw).__name__}")

    # PyYAML parses bare `on:` as boolean True
    if True in raw:
        raw["on"] = raw.pop(True)

    if not isinstance(raw.get("jobs"), dict) or not raw["jobs"]:
        raise ConfigurationError("Invalid workflow file: no 'jobs' section found")

    warnings = []
    name = str(raw.get("name", "Unnamed Workflow"))
    triggers = _parse_triggers(raw.get("on"), warnings)
    workflow_env = _with_secrets(_str_dict(raw.get("env", {}), "env"))

    jobs = []
    display_names = set()
    for job_id, job_raw in raw["jobs"].items():
        job = _parse_job(str(job_id), job_raw, workflow_env, warnings)
        if job.name in display_names:
            raise ConfigurationError(f"Duplicate job name: {job.name}")
        display_names.add(job.name)
        jobs.append(job)

    for msg in warnings:
        print(f"⚠ Warning: {msg}", file=sys.stderr)

    return Workflow(
        name=name,
        triggers=tuple(triggers),
        jobs=tuple(jobs),
        env=workflow_env,
        warnings=tuple(warnings),
    )


def _parse_triggers(trigger_raw, warnings: list) -> list[TriggerSpec]:
    if isinstance(trigger_raw, str):
        trigger_raw = {trigger_raw: None}
    elif isinstance(trigger_raw, list):
        trigger_raw = {str(t): None for t in trigger_raw}
    elif not isinstance(trigger_raw, dict):
        raise ConfigurationError("Invalid workflow file: no 'on' triggers found")

    supported = {e.value: e for e in EventType}
    triggers = []
    for event_name, filters in trigger_raw.items():
        event_type = supported.get(str(event_name))
        if event_type is None:
            warnings.append(f"Trigger '{event_name}' is not supported locally and will never match.")
            continue
        if filters is None:
            filters = {}
        if not isinstance(filters, dict):
            raise ConfigurationError(f"Trigger '{event_name}': filters must be a mapping")

        for both in (("branches", "branches-ignore"), ("paths", "paths-ignore")):
            if both[0] in filters and both[1] in filters:
                raise ConfigurationError(
                    f"Trigger '{event_name}': '{both[0]}' and '{both[1]}' cannot be used together"
                )

        branches = _pattern_set(filters, "branches", event_name)
        branches_ignore = _pattern_set(filters, "branches-ignore", event_name)
        if event_type == EventType.PULL_REQUEST and (branches or branches_ignore):
            warnings.append("Branch filters on 'pull_request' are ignored.")
            branches = branches_ignore = frozenset()

        for key in filters:
            if key not in ("branches", "branches-ignore", "paths", "paths-ignore", "types"):
                warnings.append(f"Trigger '{event_name}': filter '{key}' is ignored.")

        triggers.append(TriggerSpec(
            event_type=event_type,
            branch_filter=branches,
            branch_ignore_filter=branches_ignore,
            path_exclude_filter=_pattern_set(filters, "paths-ignore", event_name),
            path_include_filter=_pattern_set(filters, "paths", event_name),
        ))

    if not triggers:
        raise ConfigurationError("Invalid workflow file: no supported trigger (push or pull_request)")
    return triggers


def _parse_job(job_id: str, job_raw, workflow_env: dict, warnings: list) -> Job:
    if not isinstance(job_raw, dict):
        raise ConfigurationError(f"Job '{job_id}': expected a mapping")

    for key in IGNORED_JOB_KEYS:
        if key in job_raw:
            warnings.append(f"Job '{job_id}': '{key}' is not supported and is ignored.")

    job_env = {**workflow_env, **_with_secrets(_str_dict(job_raw.get("env", {}), f"Job '{job_id}' env"))}

    steps_raw = job_raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigurationError(f"Job '{job_id}': 'steps' must be a non-empty list")

    steps = tuple(
        parse_step(step_raw, f"Job '{job_id}' step {i + 1}") for i, step_raw in enumerate(steps_raw)
    )

    return Job(
        job_id=job_id,
        name=str(job_raw.get("name", job_id)),
        steps=steps,
        runs_on=str(job_raw.get("runs-on", "ubuntu-latest")),
        env=job_env,
        timeout=_timeout(job_raw, f"Job '{job_id}'"),
    )


def parse_step(step_raw, where: str = "step") -> Step:
    if not isinstance(step_raw, dict):
        raise ConfigurationError(f"{where}: expected a mapping")
    if ("uses" in step_raw) == ("run" in step_raw):
        raise ConfigurationError(f"{where}: exactly one of 'uses' or 'run' is required")

    env = _with_secrets(_str_dict(step_raw.get("env", {}), f"{where} env"))
    timeout = _timeout(step_raw, where)
    parameters = {}
    if step_raw.get("working-directory") is not None:
        parameters["working-directory"] = str(step_raw["working-directory"])

    if "uses" in step_raw:
        action_ref = str(step_raw["uses"]).strip()
        if not action_ref:
            raise ConfigurationError(f"{where}: 'uses' is empty")
        parameters["uses"] = action_ref
        inputs = _inputs(step_raw.get("with", {}), where)
        return Step(
            name=str(step_raw.get("name", f"Action: {action_ref}")),
            kind=_action_kind(action_ref),
            parameters=parameters,
            inputs=inputs,
            env=env,
            timeout=timeout,
        )

    command = str(step_raw["run"]).strip()
    if not command:
        raise ConfigurationError(f"{where}: 'run' is empty")
    parameters["run"] = command
    return Step(
        name=str(step_raw.get("name", command.split("\n")[0])),
        kind=StepKind.RUN_COMMAND,
        parameters=parameters,
        env=env,
        timeout=timeout,
    )


def _action_kind(action_ref: str) -> StepKind:
    if action_ref.startswith("./"):
        return StepKind.SETUP
    if action_ref.split("@", 1)[0] == CHECKOUT_ACTION:
        return StepKind.CHECKOUT
    return StepKind.INVOKE_ACTION


def _inputs(raw, where: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: 'with' must be a mapping")
    return _with_secrets(_str_dict(raw, f"{where} with"))


def _with_secrets(d: dict) -> dict:
    result = {}
    for k, v in d.items():
        match = _SECRET_RE.match(v.strip())
        result[k] = SecretRef(match.group(1)) if match else v
    return result


def _pattern_set(filters: dict, key: str, event_name) -> frozenset:
    value = filters.get(key)
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise ConfigurationError(f"Trigger '{event_name}': '{key}' must be a list of strings")
    return frozenset(value)


def _timeout(raw: dict, where: str) -> float | None:
    minutes = raw.get("timeout-minutes")
    if minutes is None:
        return None
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes <= 0:
        raise ConfigurationError(f"{where}: 'timeout-minutes' must be a positive number")
    return float(minutes) * 60


def _str_dict(d, where: str = "mapping") -> dict:
    if d is None:
        return {}
    if not isinstance(d, dict):
        raise ConfigurationError(f"{where}: expected a mapping")
    result = {}
    for k, v in d.items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        else:
            result[str(k)] = str(v)
    return result
