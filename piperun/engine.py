import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

from piperun.errors import ActionSkipped, StepExecutionError
from piperun.executor import StepExecutor
from piperun.log import get_logger
from piperun.models import Event, ExecutionResult, Job, RunResult, Status, Step, StepOutcome, Workflow
from piperun.triggers import workflow_triggered

logger = get_logger("piperun.engine")


class RunListener:
    """Progress hooks. Called from worker threads in concurrent mode."""

    def on_job_start(self, job: Job) -> None:
        pass

    def on_step_start(self, job: Job, step: Step) -> None:
        pass

    def on_step_finish(self, job: Job, outcome: StepOutcome) -> None:
        pass

    def on_job_finish(self, result: ExecutionResult) -> None:
        pass


def skipped(job: Job, reason: str = "") -> ExecutionResult:
    return ExecutionResult(
        job_name=job.name,
        status=Status.SKIPPED,
        not_run=tuple(s.name for s in job.steps),
        error=reason,
    )


def run_job(
    job: Job,
    executor: StepExecutor,
    listener: RunListener | None = None,
    default_timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """Run a job's steps in order, stopping at the first failure.

    Step failures of any kind end up in the returned result; nothing raised
    by the executor escapes.
    """
    if not job.steps:
        raise ValueError(f"Job '{job.name}' has no steps")
    listener = listener or RunListener()
    cancel_event = cancel_event or threading.Event()

    listener.on_job_start(job)
    logger.info("[%s] job started (%d steps)", job.name, len(job.steps))

    deadline = None if job.timeout is None else time.monotonic() + job.timeout
    outcomes = []
    error = ""
    try:
        try:
            executor.prepare(job)
        except StepExecutionError as e:
            error = str(e)
            logger.error("[%s] setup failed: %s", job.name, e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("[%s] setup failed: %s", job.name, error, exc_info=True)
        else:
            for step in job.steps:
                if cancel_event.is_set():
                    break
                outcome = _run_step(job, step, executor, listener, _timeout_for(step, default_timeout, deadline))
                outcomes.append(outcome)
                if outcome.status == Status.FAILURE:
                    break
    finally:
        try:
            executor.cleanup(job)
        except Exception:
            logger.warning("[%s] cleanup failed", job.name, exc_info=True)

    if error or any(o.status == Status.FAILURE for o in outcomes):
        status = Status.FAILURE
    elif len(outcomes) < len(job.steps):
        status = Status.SKIPPED
        error = "cancelled"
    else:
        status = Status.SUCCESS

    result = ExecutionResult(
        job_name=job.name,
        status=status,
        step_results=tuple(outcomes),
        not_run=tuple(s.name for s in job.steps[len(outcomes):]),
        error=error,
    )
    logger.info("[%s] job finished: %s", job.name, status.value)
    listener.on_job_finish(result)
    return result


def _timeout_for(step: Step, default_timeout: float | None, deadline: float | None) -> float | None:
    timeout = step.timeout if step.timeout is not None else default_timeout
    if deadline is not None:
        remaining = max(deadline - time.monotonic(), 0.001)
        timeout = remaining if timeout is None else min(timeout, remaining)
    return timeout


def _run_step(job: Job, step: Step, executor: StepExecutor, listener: RunListener, timeout: float | None) -> StepOutcome:
    listener.on_step_start(job, step)
    logger.info("[%s] ▶ %s", job.name, step.name)
    start = time.monotonic()

    try:
        result = executor.execute(job, step, timeout=timeout)
    except ActionSkipped as e:
        outcome = StepOutcome(name=step.name, status=Status.SKIPPED, error=str(e))
    except StepExecutionError as e:
        outcome = StepOutcome(
            name=step.name, status=Status.FAILURE, exit_code=e.exit_code, output=e.output, error=str(e)
        )
    except Exception as e:
        logger.debug("[%s] executor raised", job.name, exc_info=True)
        outcome = StepOutcome(name=step.name, status=Status.FAILURE, error=f"{type(e).__name__}: {e}")
    else:
        outcome = StepOutcome(
            name=step.name,
            status=Status.SUCCESS if result.exit_code == 0 else Status.FAILURE,
            exit_code=result.exit_code,
            output=result.stdout + result.stderr,
        )
    outcome.duration = time.monotonic() - start

    if outcome.status == Status.SUCCESS:
        logger.info("[%s] ✓ %s (%.1fs)", job.name, step.name, outcome.duration)
    elif outcome.status == Status.SKIPPED:
        logger.info("[%s] ⊘ %s: %s", job.name, step.name, outcome.error)
    else:
        reason = outcome.error or f"exit code {outcome.exit_code}"
        logger.error("[%s] ✗ %s (%s)", job.name, step.name, reason)

    listener.on_step_finish(job, outcome)
    return outcome


class Orchestrator:
    def __init__(
        self,
        workflow: Workflow,
        executor: StepExecutor,
        mode: str = "concurrent",
        max_workers: int | None = None,
        default_timeout: float | None = None,
        listener: RunListener | None = None,
    ):
        if mode not in ("sequential", "concurrent"):
            raise ValueError(f"Unknown execution mode: {mode}")
        self.workflow = workflow
        self.executor = executor
        self.mode = mode
        self.max_workers = max_workers
        self.default_timeout = default_timeout
        self.listener = listener or RunListener()
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        if self._cancel.is_set():
            return
        logger.warning("Run cancelled, terminating running steps")
        self._cancel.set()
        self.executor.cancel()

    def run(self, event: Event) -> RunResult:
        jobs = self.workflow.jobs
        if not workflow_triggered(event, self.workflow):
            logger.info("Event %s does not match the workflow triggers, skipping all jobs", event.event_type.value)
            results = tuple(skipped(job, "not triggered") for job in jobs)
            for result in results:
                self.listener.on_job_finish(result)
            return RunResult(results=results, triggered=False)

        if self.mode == "sequential":
            workers = 1
        else:
            workers = self.max_workers or max(len(jobs), 1)

        # Sequential mode is a single worker taking jobs in submission order.
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="piperun-job") as pool:
            futures = [pool.submit(self._run_or_skip, job) for job in jobs]
            try:
                wait(futures)
            except KeyboardInterrupt:
                self.cancel()
            results = tuple(f.result() for f in futures)

        return RunResult(results=results, triggered=True, cancelled=self.cancelled)

    def _run_or_skip(self, job: Job) -> ExecutionResult:
        if self._cancel.is_set():
            result = skipped(job, "cancelled")
            self.listener.on_job_finish(result)
            return result
        return run_job(
            job,
            self.executor,
            listener=self.listener,
            default_timeout=self.default_timeout,
            cancel_event=self._cancel,
        )


def run(event: Event, workflow: Workflow, executor: StepExecutor, **kwargs) -> RunResult:
    return Orchestrator(workflow, executor, **kwargs).run(event)
