import sys
import os
from piperun import __version__
from piperun.config import load_config
from piperun.engine import Orchestrator
from piperun.errors import EventError
from piperun.events import changed_paths_from_git, current_branch, event_from_github_env, make_event
from piperun.executor import build_executor
from piperun.models import EventType
from piperun.parser import parse_workflow
from piperun.report import format_summary


def main():
    try:
        _run()
    except KeyboardInterrupt:
        print()
        sys.exit(130)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _run():
    args = sys.argv[1:]

    if len(args) == 1 and args[0] in ("--version", "-V"):
        print(f"piperun {__version__}")
        sys.exit(0)

    if len(args) >= 1 and args[0] in ("--help", "-h"):
        _print_help()
        sys.exit(0)

    if len(args) < 2 or args[0] not in ("run", "check"):
        _print_help()
        sys.exit(1)

    if args[1] in ("--help", "-h"):
        _print_help()
        sys.exit(0)

    workflow_path = args[1]
    if not os.path.exists(workflow_path):
        print(f"Error: File not found: {workflow_path}")
        sys.exit(1)
    if not os.path.isfile(workflow_path):
        print(f"Error: Not a file: {workflow_path}")
        sys.exit(1)

    workflow = parse_workflow(workflow_path)

    if args[0] == "check":
        _print_workflow(workflow)
        sys.exit(0)

    workdir = os.path.abspath(_option(args, "--workdir", "."))
    config = load_config(
        _option(args, "--config"),
        workdir=workdir,
        overrides={
            "executor": _option(args, "--executor"),
            "mode": _option(args, "--mode"),
            "max_workers": _option(args, "--jobs"),
            "step_timeout": _option(args, "--timeout"),
        },
    )
    event = _build_event(args, workdir)

    print(f"Workflow: {workflow.name}")
    print(f"Event:    {event.event_type.value}" + (f" ({event.branch})" if event.branch else ""))
    print(f"Changed:  {len(event.changed_paths)} paths")
    print(f"Jobs:     {len(workflow.jobs)} ({config.mode}, {config.executor} executor)")
    print()

    orchestrator = Orchestrator(
        workflow,
        build_executor(config),
        mode=config.mode,
        max_workers=config.max_workers,
        default_timeout=config.step_timeout,
    )

    if "--tui" in args:
        from piperun.tui import RunMonitorApp
        app = RunMonitorApp(workflow=workflow, orchestrator=orchestrator, event=event)
        app.run()
        if app.run_result is None:
            sys.exit(130)
        sys.exit(app.run_result.exit_code)

    result = orchestrator.run(event)
    print()
    print(format_summary(result))
    sys.exit(result.exit_code)


def _build_event(args: list, workdir: str):
    if "--github-env" in args:
        return event_from_github_env()

    event_type = _option(args, "--event", EventType.PUSH.value)
    branch = _option(args, "--branch")
    if branch is None and event_type == EventType.PUSH.value:
        branch = current_branch(workdir)

    changed = _all_options(args, "--changed")
    if not changed:
        try:
            changed = changed_paths_from_git(workdir, base=_option(args, "--base"))
        except EventError as e:
            print(f"⚠ Warning: {e}; changed paths unknown, path filters not applied.", file=sys.stderr)
            changed = []

    return make_event(event_type, branch=branch, changed_paths=changed)


def _option(args: list, name: str, default: str | None = None) -> str | None:
    if name not in args:
        return default
    idx = args.index(name)
    if idx + 1 < len(args) and not args[idx + 1].startswith("--"):
        return args[idx + 1]
    print(f"Error: {name} requires a value")
    sys.exit(1)


def _all_options(args: list, name: str) -> list[str]:
    values = []
    for idx, arg in enumerate(args):
        if arg != name:
            continue
        if idx + 1 >= len(args) or args[idx + 1].startswith("--"):
            print(f"Error: {name} requires a value")
            sys.exit(1)
        values.append(args[idx + 1])
    return values


def _print_workflow(workflow):
    print(f"Workflow: {workflow.name}")
    for trigger in workflow.triggers:
        print(f"  on {trigger.event_type.value}")
        if trigger.branch_filter:
            print(f"    branches:        {', '.join(sorted(trigger.branch_filter))}")
        if trigger.branch_ignore_filter:
            print(f"    branches-ignore: {', '.join(sorted(trigger.branch_ignore_filter))}")
        if trigger.path_include_filter:
            print(f"    paths:           {', '.join(sorted(trigger.path_include_filter))}")
        if trigger.path_exclude_filter:
            print(f"    paths-ignore:    {', '.join(sorted(trigger.path_exclude_filter))}")
    for job in workflow.jobs:
        print(f"Job: {job.name} ({len(job.steps)} steps)")
        for i, step in enumerate(job.steps):
            print(f"  {i + 1}. [{step.kind.value}] {step.name}")
    print("OK")


def _print_help():
    print(f"piperun {__version__} — Run CI workflows locally")
    print()
    print("Usage: piperun run <workflow.yml> [options]")
    print("       piperun check <workflow.yml>")
    print()
    print("Options:")
    print("  --event <name>       push or pull_request (default: push)")
    print("  --branch <name>      Branch pushed to (default: current branch)")
    print("  --changed <path>     Changed path, repeatable (default: git diff)")
    print("  --base <ref>         Compare ref for git diff (default: merge-base with origin/main)")
    print("  --github-env         Read the event from GITHUB_EVENT_NAME / GITHUB_EVENT_PATH")
    print("  --executor <name>    local or docker (default: local)")
    print("  --mode <name>        concurrent or sequential (default: concurrent)")
    print("  --jobs <n>           Maximum jobs running at once")
    print("  --timeout <seconds>  Default step timeout")
    print("  --workdir <path>     Repository directory (default: .)")
    print("  --config <file>      Runner config (default: <workdir>/.piperun.yml)")
    print("  --tui                Show a live dashboard")
    print("  --version, -V        Show version")
    print("  --help, -h           Show this help")
    print()
    print("Example:")
    print("  piperun run .github/workflows/ci.yaml --event pull_request")
    print("  piperun run ci.yaml --event push --branch main --changed README.md")


if __name__ == "__main__":
    main()
