from piperun.models import RunResult, Status

OUTPUT_TAIL_LINES = 20

ICONS = {
    Status.SUCCESS: "✓",
    Status.FAILURE: "✗",
    Status.SKIPPED: "⊘",
}


def tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    kept = text.rstrip().split("\n")
    if len(kept) > lines:
        return f"... ({len(kept) - lines} earlier lines)\n" + "\n".join(kept[-lines:])
    return "\n".join(kept)


def format_summary(run: RunResult) -> str:
    out = []
    if not run.triggered:
        out.append("No trigger matched this event; all jobs skipped.")

    for result in run.results:
        steps_run = len(result.step_results)
        total = steps_run + len(result.not_run)
        out.append(f"{ICONS[result.status]} {result.job_name}: {result.status.value} ({steps_run}/{total} steps run)")

        if result.status != Status.FAILURE:
            continue
        failed = result.first_failure
        if failed is None:
            out.append(f"    {result.error}")
            continue
        reason = failed.error or f"exit code {failed.exit_code}"
        out.append(f"    First failing step: {failed.name} ({reason})")
        if failed.output.strip():
            for line in tail(failed.output).split("\n"):
                out.append(f"    | {line}")

    if run.cancelled:
        out.append("Run cancelled.")
    out.append(f"Result: {run.status.value}")
    return "\n".join(out)
