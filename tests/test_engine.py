import threading
import time

import pytest

from piperun.engine import Orchestrator, RunListener, run, run_job
from piperun.errors import ActionSkipped, StepExecutionError
from piperun.executor import StepExecutor
from piperun.models import (
    Event, EventType, Job, Status, Step, StepKind, StepResult, TriggerSpec, Workflow,
)
from piperun.report import format_summary


def cmd(command: str, name: str | None = None) -> Step:
    return Step(name=name or command, kind=StepKind.RUN_COMMAND, parameters={"run": command})


class ScriptedExecutor(StepExecutor):
    """Interprets commands: 'ok', 'fail <code>', 'raise', 'skip', 'boom', 'sleep <s>'."""

    def __init__(self):
        self.calls = []
        self.prepared = []
        self.cleaned = []
        self.timeouts = []
        self.cancelled = threading.Event()
        self._lock = threading.Lock()

    def prepare(self, job):
        self.prepared.append(job.job_id)
        if job.env.get("PREPARE") == "fail":
            raise StepExecutionError("no container runtime")
        if job.env.get("PREPARE") == "unreachable":
            raise ConnectionError("docker pull timed out")

    def execute(self, job, step, timeout=None):
        with self._lock:
            self.calls.append((job.job_id, step.name))
            self.timeouts.append(timeout)
        word, _, arg = step.command.partition(" ")
        if word == "ok":
            return StepResult(exit_code=0, stdout=f"{step.name} done\n", stderr="")
        if word == "fail":
            return StepResult(exit_code=int(arg), stdout="", stderr="error: lint found problems\n")
        if word == "raise":
            raise StepExecutionError("tool not found: cargo", exit_code=127)
        if word == "skip":
            raise ActionSkipped("no local command")
        if word == "boom":
            raise OSError("disk on fire")
        if word == "sleep":
            if self.cancelled.wait(float(arg)):
                raise StepExecutionError("cancelled")
            return StepResult(exit_code=0, stdout="", stderr="")
        raise AssertionError(f"unknown scripted command {step.command}")

    def cleanup(self, job):
        self.cleaned.append(job.job_id)

    def cancel(self):
        self.cancelled.set()


def make_job(job_id: str, *steps: Step, **kwargs) -> Job:
    return Job(job_id=job_id, name=kwargs.pop("name", job_id), steps=tuple(steps), **kwargs)


CI_TRIGGERS = (
    TriggerSpec(EventType.PULL_REQUEST, path_exclude_filter=frozenset({"**.md", "LICENSE", ".gitignore"})),
    TriggerSpec(
        EventType.PUSH,
        branch_filter=frozenset({"main"}),
        path_exclude_filter=frozenset({"**.md", "LICENSE", ".gitignore"}),
    ),
)


def ci_workflow(lint_command: str = "ok", test_command: str = "ok") -> Workflow:
    return Workflow(
        name="CI",
        triggers=CI_TRIGGERS,
        jobs=(
            make_job("lint", cmd("ok", "checkout"), cmd("ok", "setup"), cmd(lint_command, "clippy"), name="Run clippy"),
            make_job("test", cmd("ok", "checkout"), cmd("ok", "setup"), cmd(test_command, "make test"), name="Run test"),
        ),
    )


@pytest.fixture
def executor():
    return ScriptedExecutor()


class TestRunJob:
    def test_all_steps_succeed(self, executor):
        job = make_job("build", cmd("ok", "a"), cmd("ok", "b"), cmd("ok", "c"))
        result = run_job(job, executor)
        assert result.status == Status.SUCCESS
        assert [o.name for o in result.step_results] == ["a", "b", "c"]
        assert all(o.status == Status.SUCCESS for o in result.step_results)
        assert result.not_run == ()

    @pytest.mark.parametrize("failing_index", [0, 1, 2])
    def test_failure_stops_remaining_steps(self, executor, failing_index):
        steps = [cmd("ok", f"s{i}") for i in range(4)]
        steps[failing_index] = cmd("fail 1", f"s{failing_index}")
        result = run_job(make_job("build", *steps), executor)

        assert result.status == Status.FAILURE
        assert len(result.step_results) == failing_index + 1
        assert result.first_failure.name == f"s{failing_index}"
        assert result.first_failure.exit_code == 1
        assert "lint found problems" in result.first_failure.output
        assert result.not_run == tuple(f"s{i}" for i in range(failing_index + 1, 4))
        assert len(executor.calls) == failing_index + 1

    def test_execution_error_is_captured_not_raised(self, executor):
        result = run_job(make_job("build", cmd("raise"), cmd("ok")), executor)
        assert result.status == Status.FAILURE
        assert len(result.step_results) == 1
        assert result.first_failure.error == "tool not found: cargo"
        assert result.first_failure.exit_code == 127

    def test_unexpected_executor_exception_is_captured(self, executor):
        result = run_job(make_job("build", cmd("boom"), cmd("ok")), executor)
        assert result.status == Status.FAILURE
        assert "disk on fire" in result.first_failure.error

    def test_skipped_action_does_not_fail_job(self, executor):
        result = run_job(make_job("build", cmd("skip", "clippy"), cmd("ok")), executor)
        assert result.status == Status.SUCCESS
        assert [o.status for o in result.step_results] == [Status.SKIPPED, Status.SUCCESS]

    def test_prepare_failure_fails_job_without_steps(self, executor):
        job = make_job("build", cmd("ok"), env={"PREPARE": "fail"})
        result = run_job(job, executor)
        assert result.status == Status.FAILURE
        assert result.step_results == ()
        assert result.not_run == ("ok",)
        assert result.error == "no container runtime"
        assert executor.cleaned == ["build"]

    def test_unexpected_prepare_error_fails_only_that_job(self, executor):
        workflow = Workflow(
            name="CI",
            triggers=CI_TRIGGERS,
            jobs=(
                make_job("lint", cmd("ok"), env={"PREPARE": "unreachable"}),
                make_job("test", cmd("ok")),
            ),
        )
        event = Event(EventType.PULL_REQUEST, changed_paths=frozenset({"src/lib.rs"}))
        outcome = run(event, workflow, executor, mode="sequential")

        assert [r.status for r in outcome.results] == [Status.FAILURE, Status.SUCCESS]
        assert outcome.results[0].error == "ConnectionError: docker pull timed out"
        assert outcome.results[0].step_results == ()
        assert executor.cleaned == ["lint", "test"]

    def test_cleanup_always_called(self, executor):
        run_job(make_job("build", cmd("fail 2")), executor)
        assert executor.prepared == ["build"]
        assert executor.cleaned == ["build"]

    def test_empty_job_rejected(self, executor):
        with pytest.raises(ValueError):
            run_job(make_job("empty"), executor)

    def test_step_timeout_wins_over_default(self, executor):
        step = Step(name="slow", kind=StepKind.RUN_COMMAND, parameters={"run": "ok"}, timeout=5.0)
        run_job(make_job("build", step, cmd("ok")), executor, default_timeout=60.0)
        assert executor.timeouts == [5.0, 60.0]

    def test_job_timeout_bounds_steps(self, executor):
        run_job(make_job("build", cmd("ok"), timeout=30.0), executor, default_timeout=600.0)
        assert 0 < executor.timeouts[0] <= 30.0

    def test_listener_sees_every_step(self, executor):
        seen = []

        class Recorder(RunListener):
            def on_job_start(self, job):
                seen.append(("job", job.job_id))

            def on_step_start(self, job, step):
                seen.append(("start", step.name))

            def on_step_finish(self, job, outcome):
                seen.append(("finish", outcome.name, outcome.status))

            def on_job_finish(self, result):
                seen.append(("done", result.status))

        run_job(make_job("build", cmd("ok", "a"), cmd("fail 1", "b")), executor, listener=Recorder())
        assert seen == [
            ("job", "build"),
            ("start", "a"),
            ("finish", "a", Status.SUCCESS),
            ("start", "b"),
            ("finish", "b", Status.FAILURE),
            ("done", Status.FAILURE),
        ]


class TestRun:
    def test_docs_only_push_skips_everything(self, executor):
        event = Event(EventType.PUSH, branch="main", changed_paths=frozenset({"README.md"}))
        result = run(event, ci_workflow(), executor)
        assert result.triggered is False
        assert [r.status for r in result.results] == [Status.SKIPPED, Status.SKIPPED]
        assert result.status == Status.SUCCESS
        assert result.exit_code == 0
        assert executor.calls == []

    def test_lint_failure_does_not_stop_test_job(self, executor):
        event = Event(EventType.PULL_REQUEST, changed_paths=frozenset({"src/lib.rs"}))
        result = run(event, ci_workflow(lint_command="fail 1"), executor)
        lint, test = result.results
        assert lint.job_name == "Run clippy"
        assert lint.status == Status.FAILURE
        assert test.status == Status.SUCCESS
        assert result.status == Status.FAILURE
        assert result.exit_code == 1

    def test_results_keep_workflow_order(self, executor):
        wf = Workflow(
            name="CI",
            triggers=(TriggerSpec(EventType.PUSH),),
            jobs=(make_job("slow", cmd("sleep 0.2")), make_job("fast", cmd("ok"))),
        )
        result = run(Event(EventType.PUSH, branch="main"), wf, executor, mode="concurrent")
        assert [r.job_name for r in result.results] == ["slow", "fast"]

    @pytest.mark.parametrize("lint, test", [("ok", "ok"), ("fail 1", "ok"), ("raise", "fail 2"), ("skip", "ok")])
    def test_concurrent_and_sequential_agree(self, lint, test):
        event = Event(EventType.PULL_REQUEST, changed_paths=frozenset({"src/lib.rs"}))
        sequential = run(event, ci_workflow(lint, test), ScriptedExecutor(), mode="sequential")
        concurrent = run(event, ci_workflow(lint, test), ScriptedExecutor(), mode="concurrent")

        def strip(run_result):
            return [
                (r.job_name, r.status, [(o.name, o.status, o.exit_code) for o in r.step_results], r.not_run)
                for r in run_result.results
            ]

        assert strip(sequential) == strip(concurrent)
        assert sequential.status == concurrent.status

    def test_sequential_mode_runs_jobs_in_order(self, executor):
        event = Event(EventType.PULL_REQUEST)
        run(event, ci_workflow(), executor, mode="sequential")
        assert [c[0] for c in executor.calls] == ["lint"] * 3 + ["test"] * 3

    def test_unknown_mode_rejected(self, executor):
        with pytest.raises(ValueError):
            Orchestrator(ci_workflow(), executor, mode="parallel")

    def test_cancel_skips_unstarted_jobs(self, executor):
        wf = Workflow(
            name="CI",
            triggers=(TriggerSpec(EventType.PUSH),),
            jobs=(
                make_job("first", cmd("sleep 5", "long"), cmd("ok", "after")),
                make_job("second", cmd("ok")),
            ),
        )
        orchestrator = Orchestrator(wf, executor, mode="sequential")
        timer = threading.Timer(0.2, orchestrator.cancel)
        timer.start()
        started = time.monotonic()
        result = orchestrator.run(Event(EventType.PUSH, branch="main"))
        timer.join()

        assert time.monotonic() - started < 5
        first, second = result.results
        assert first.status == Status.FAILURE
        assert first.first_failure.error == "cancelled"
        assert first.not_run == ("after",)
        assert second.status == Status.SKIPPED
        assert second.not_run == ("ok",)
        assert result.cancelled is True
        assert result.exit_code == 130


def test_summary_lists_first_failing_step(executor):
    event = Event(EventType.PULL_REQUEST, changed_paths=frozenset({"src/lib.rs"}))
    summary = format_summary(run(event, ci_workflow(lint_command="fail 1"), executor))
    assert "✗ Run clippy: failure (3/3 steps run)" in summary
    assert "First failing step: clippy (exit code 1)" in summary
    assert "| error: lint found problems" in summary
    assert "✓ Run test: success" in summary
    assert summary.endswith("Result: failure")


def test_summary_for_untriggered_run(executor):
    event = Event(EventType.PUSH, branch="main", changed_paths=frozenset({"README.md"}))
    summary = format_summary(run(event, ci_workflow(), executor))
    assert summary.startswith("No trigger matched")
    assert "⊘ Run clippy: skipped (0/3 steps run)" in summary
