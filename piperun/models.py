from dataclasses import dataclass, field
from enum import Enum


class EventType(Enum):
    PULL_REQUEST = "pull_request"
    PUSH = "push"


class StepKind(Enum):
    CHECKOUT = "checkout"
    SETUP = "setup"
    RUN_COMMAND = "run"
    INVOKE_ACTION = "action"


class Status(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SecretRef:
    """Handle to a secret held outside the workflow. Only the name is ever stored."""

    name: str

    def __str__(self) -> str:
        return f"${{{{ secrets.{self.name} }}}}"


@dataclass(frozen=True)
class TriggerSpec:
    event_type: EventType
    branch_filter: frozenset = frozenset()
    branch_ignore_filter: frozenset = frozenset()
    path_exclude_filter: frozenset = frozenset()
    path_include_filter: frozenset = frozenset()


@dataclass(frozen=True)
class Step:
    name: str
    kind: StepKind
    parameters: dict = field(default_factory=dict)
    inputs: dict = field(default_factory=dict)
    env: dict = field(default_factory=dict)
    timeout: float | None = None

    @property
    def command(self) -> str:
        return self.parameters.get("run", "")

    @property
    def action_ref(self) -> str:
        return self.parameters.get("uses", "")

    @property
    def working_directory(self) -> str:
        return self.parameters.get("working-directory", "")


@dataclass(frozen=True)
class Job:
    job_id: str
    name: str
    steps: tuple
    runs_on: str = "ubuntu-latest"
    env: dict = field(default_factory=dict)
    timeout: float | None = None


@dataclass(frozen=True)
class Workflow:
    name: str
    triggers: tuple = ()
    jobs: tuple = ()
    env: dict = field(default_factory=dict)
    warnings: tuple = ()


@dataclass(frozen=True)
class Event:
    event_type: EventType
    branch: str | None = None
    changed_paths: frozenset = frozenset()


@dataclass
class StepResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class StepOutcome:
    name: str
    status: Status
    exit_code: int | None = None
    output: str = ""
    error: str = ""
    duration: float = 0.0


@dataclass
class ExecutionResult:
    job_name: str
    status: Status
    step_results: tuple = ()
    not_run: tuple = ()
    error: str = ""

    @property
    def first_failure(self) -> StepOutcome | None:
        for outcome in self.step_results:
            if outcome.status == Status.FAILURE:
                return outcome
        return None


@dataclass
class RunResult:
    results: tuple = ()
    triggered: bool = True
    cancelled: bool = False

    @property
    def status(self) -> Status:
        if any(r.status == Status.FAILURE for r in self.results):
            return Status.FAILURE
        return Status.SUCCESS

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 1 if self.status == Status.FAILURE else 0
