from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Header, Footer, Static, RichLog, ListView, ListItem, Label
from textual import work
from rich.markup import escape

from piperun.engine import Orchestrator, RunListener
from piperun.models import Event, ExecutionResult, Job, RunResult, Status, Step, StepOutcome, Workflow
from piperun.report import format_summary, tail

PENDING = "pending"
RUNNING = "running"
NOT_RUN = "not run"

ICONS = {
    PENDING: "  ",
    RUNNING: "[yellow]~[/yellow]",
    NOT_RUN: "[dim]-[/dim]",
    Status.SUCCESS.value: "[green]✓[/green]",
    Status.FAILURE.value: "[red]✗[/red]",
    Status.SKIPPED.value: "[dim]⊘[/dim]",
}


class StepListItem(ListItem):
    """One step row in the sidebar."""

    def __init__(self, job: Job, step: Step, index: int) -> None:
        super().__init__()
        self.job = job
        self.step = step
        self.step_index = index
        self.state = PENDING
        self.outcome: StepOutcome | None = None

    def compose(self) -> ComposeResult:
        yield Label(self._render_label())

    def _render_label(self) -> str:
        return f"{ICONS.get(self.state, ' ')}   {self.step_index + 1}. {escape(self.step.name)}"

    def set_state(self, state: str, outcome: StepOutcome | None = None) -> None:
        self.state = state
        if outcome is not None:
            self.outcome = outcome
        self.query_one(Label).update(self._render_label())


class JobListItem(ListItem):
    def __init__(self, job: Job) -> None:
        super().__init__()
        self.job = job
        self.state = PENDING

    def compose(self) -> ComposeResult:
        yield Label(self._render_label())

    def _render_label(self) -> str:
        return f"{ICONS.get(self.state, ' ')} [bold]{escape(self.job.name)}[/bold]"

    def set_state(self, state: str) -> None:
        self.state = state
        self.query_one(Label).update(self._render_label())


class StepDetailPanel(Static):
    """Shows details about the highlighted step."""

    def update_step(self, item: StepListItem) -> None:
        step = item.step
        if step.command:
            cmd_lines = step.command.split("\n")
            if len(cmd_lines) > 5:
                cmd_display = "\n".join(cmd_lines[:5]) + f"\n... (+{len(cmd_lines) - 5} more lines)"
            else:
                cmd_display = step.command
        else:
            cmd_display = f"Action: {step.action_ref}"

        text = (
            f"[bold]{escape(step.name)}[/bold]  ({escape(item.job.name)})\n"
            f"Kind: {step.kind.value}\n"
            f"{escape(cmd_display)}\n"
            f"Status: {item.state}"
        )
        if item.outcome is not None and item.outcome.error:
            text += f"\nError: {escape(item.outcome.error)}"
        self.update(text)


class _AppListener(RunListener):
    def __init__(self, app: "RunMonitorApp") -> None:
        self.app = app

    def _post(self, callback, *args) -> None:
        if self.app.is_running:
            self.app.call_from_thread(callback, *args)

    def on_job_start(self, job: Job) -> None:
        self._post(self.app.job_started, job)

    def on_step_start(self, job: Job, step: Step) -> None:
        self._post(self.app.step_started, job, step)

    def on_step_finish(self, job: Job, outcome: StepOutcome) -> None:
        self._post(self.app.step_finished, job, outcome)

    def on_job_finish(self, result: ExecutionResult) -> None:
        self._post(self.app.job_finished, result)


class RunMonitorApp(App):
    """piperun — live view of a workflow run."""

    CSS = """
    #step-list {
        width: 50;
        border: solid $primary;
        padding: 0 1;
    }
    #right-pane {
        width: 1fr;
    }
    #step-detail {
        height: 9;
        border: solid $accent;
        padding: 1;
    }
    #output-log {
        height: 1fr;
        border: solid $success;
    }
    """

    BINDINGS = [
        ("c", "cancel_run", "Cancel run"),
        ("q", "quit_app", "Quit"),
    ]

    def __init__(self, workflow: Workflow, orchestrator: Orchestrator, event: Event):
        super().__init__()
        self.workflow = workflow
        self.orchestrator = orchestrator
        self.orchestrator.listener = _AppListener(self)
        self.run_event = event
        self.run_result: RunResult | None = None
        self.title = f"piperun — {workflow.name}"
        self._running_steps = {}

    def compose(self) -> ComposeResult:
        items = []
        for job in self.workflow.jobs:
            items.append(JobListItem(job))
            items.extend(StepListItem(job, step, i) for i, step in enumerate(job.steps))
        yield Header()
        with Horizontal():
            yield ListView(*items, id="step-list")
            with Vertical(id="right-pane"):
                yield StepDetailPanel(id="step-detail")
                yield RichLog(highlight=True, markup=True, auto_scroll=True, id="output-log")
        yield Footer()

    def on_mount(self) -> None:
        self._log(f"[bold]{escape(self.workflow.name)}[/bold] — {self.run_event.event_type.value}")
        if self.run_event.branch:
            self._log(f"Branch: {self.run_event.branch}")
        self._log(f"Changed paths: {len(self.run_event.changed_paths)}\n")
        self._execute_run()

    def on_unmount(self) -> None:
        if self.run_result is None:
            self.orchestrator.cancel()

    @work(thread=True)
    def _execute_run(self) -> None:
        result = self.orchestrator.run(self.run_event)
        if self.is_running:
            self.call_from_thread(self.run_finished, result)

    def _log(self, message: str) -> None:
        self.query_one("#output-log", RichLog).write(message)

    def _job_item(self, job_name: str) -> JobListItem | None:
        for item in self.query(JobListItem):
            if item.job.name == job_name:
                return item
        return None

    def _step_item(self, job: Job, index: int) -> StepListItem | None:
        for item in self.query(StepListItem):
            if item.job.job_id == job.job_id and item.step_index == index:
                return item
        return None

    # --- Run progress (main thread) ---

    def job_started(self, job: Job) -> None:
        item = self._job_item(job.name)
        if item is not None:
            item.set_state(RUNNING)
        self._log(f"[bold]━━ {escape(job.name)}[/bold]")

    def step_started(self, job: Job, step: Step) -> None:
        index = next(i for i, s in enumerate(job.steps) if s is step)
        self._running_steps[job.job_id] = index
        item = self._step_item(job, index)
        if item is not None:
            item.set_state(RUNNING)
        self._log(f"{escape(job.name)} > {escape(step.name)}")

    def step_finished(self, job: Job, outcome: StepOutcome) -> None:
        index = self._running_steps.pop(job.job_id, None)
        item = self._step_item(job, index) if index is not None else None
        if item is not None:
            item.set_state(outcome.status.value, outcome)

        if outcome.status == Status.SUCCESS:
            self._log(f"[green]  ✓ {escape(outcome.name)} ({outcome.duration:.1f}s)[/green]")
        elif outcome.status == Status.SKIPPED:
            self._log(f"[dim]  ⊘ {escape(outcome.name)}: {escape(outcome.error)}[/dim]")
        else:
            reason = outcome.error or f"exit code {outcome.exit_code}"
            self._log(f"[red]  ✗ {escape(outcome.name)} ({escape(reason)})[/red]")
            if outcome.output.strip():
                for line in tail(outcome.output).split("\n"):
                    self._log(f"    {escape(line)}")

    def job_finished(self, result: ExecutionResult) -> None:
        item = self._job_item(result.job_name)
        if item is None:
            return
        item.set_state(result.status.value)
        for step_item in self.query(StepListItem):
            if step_item.job is item.job and step_item.state == PENDING:
                step_item.set_state(NOT_RUN)

    def run_finished(self, result: RunResult) -> None:
        self.run_result = result
        self._log("")
        for line in format_summary(result).split("\n"):
            self._log(escape(line))
        self._log("\nPress [bold]Q[/bold] to quit.")

    def on_list_view_highlighted(self, event: ListView.Highlighted) -> None:
        if event.item and isinstance(event.item, StepListItem):
            self.query_one(StepDetailPanel).update_step(event.item)

    # --- Actions ---

    def action_cancel_run(self) -> None:
        if self.run_result is not None or self.orchestrator.cancelled:
            return
        self._log("\n[yellow]Cancelling run...[/yellow]")
        self.orchestrator.cancel()

    def action_quit_app(self) -> None:
        if self.run_result is None:
            # Leave once the run worker has wound down.
            self.action_cancel_run()
            self.notify("Waiting for running steps to stop...", severity="warning")
            return
        self.exit(return_code=self.run_result.exit_code)
