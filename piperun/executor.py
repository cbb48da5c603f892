import os
import re
import shlex
import signal
import subprocess
import threading
import time

import docker
import yaml
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from piperun.config import IMAGE_MAP
from piperun.errors import ActionSkipped, ConfigurationError, StepExecutionError
from piperun.models import Job, Step, StepKind, StepResult
from piperun.parser import parse_step
from piperun.secrets import SecretStore

_INPUT_EXPR_RE = re.compile(r"\$\{\{\s*inputs\.([A-Za-z0-9_-]+)\s*\}\}")


def _git_facts(workdir: str) -> tuple[str, str]:
    git_sha = ""
    git_ref = ""
    try:
        git_sha = subprocess.check_output(
            ["git", "rev-parse", "HEAD"], cwd=workdir, stderr=subprocess.DEVNULL
        ).decode().strip()
        git_ref = subprocess.check_output(
            ["git", "symbolic-ref", "HEAD"], cwd=workdir, stderr=subprocess.DEVNULL
        ).decode().strip()
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        pass
    return git_sha, git_ref


def input_env(inputs: dict) -> dict:
    """Action inputs exposed the way GitHub runners do: INPUT_<NAME>."""
    return {f"INPUT_{k.replace(' ', '_').upper()}": v for k, v in inputs.items()}


class StepExecutor:
    """Runs the steps of a job. One instance serves every job of a run.

    ``execute`` returns a StepResult for anything that ran (any exit code),
    raises StepExecutionError when the step could not run at all and
    ActionSkipped when an action step is deliberately not run.
    """

    def prepare(self, job: Job) -> None:
        pass

    def execute(self, job: Job, step: Step, timeout: float | None = None) -> StepResult:
        raise NotImplementedError

    def cleanup(self, job: Job) -> None:
        pass

    def cancel(self) -> None:
        pass


class ShellExecutor(StepExecutor):
    """Resolves checkout, composite and third-party action steps to shell commands."""

    workspace = "."

    def __init__(
        self,
        workdir: str = ".",
        actions: dict | None = None,
        skip_unknown_actions: bool = True,
        secrets: SecretStore | None = None,
    ):
        self.workdir = os.path.abspath(workdir)
        self.actions = dict(actions or {})
        self.skip_unknown_actions = skip_unknown_actions
        self.secrets = secrets or SecretStore()
        self._cancelled = threading.Event()
        self._default_env = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def default_env(self) -> dict:
        # Default env vars to match GitHub Actions runner
        if self._default_env is None:
            git_sha, git_ref = _git_facts(self.workdir)
            self._default_env = {
                "CI": "true",
                "GITHUB_ACTIONS": "true",
                "GITHUB_WORKSPACE": self.workspace,
                "GITHUB_SHA": git_sha,
                "GITHUB_REF": git_ref,
                "RUNNER_OS": "Linux",
                "RUNNER_TEMP": "/tmp",
            }
        return self._default_env

    def execute(self, job: Job, step: Step, timeout: float | None = None) -> StepResult:
        if self.cancelled:
            raise StepExecutionError("cancelled")

        try:
            if step.kind == StepKind.RUN_COMMAND:
                env = self.secrets.resolve_all({**job.env, **step.env})
                result = self.run_shell(job, self.secrets.expand(step.command), env, step.working_directory, timeout)
            elif step.kind == StepKind.CHECKOUT:
                result = StepResult(exit_code=0, stdout=f"Workspace already checked out at {self.workspace}\n", stderr="")
            elif step.kind == StepKind.SETUP:
                result = self._run_composite(job, step, step.inputs, timeout)
            else:
                result = self._run_mapped_action(job, step, timeout)
        except StepExecutionError as e:
            e.output = self.secrets.mask(e.output)
            raise

        return StepResult(
            exit_code=result.exit_code,
            stdout=self.secrets.mask(result.stdout),
            stderr=self.secrets.mask(result.stderr),
        )

    def run_shell(self, job: Job, command: str, env: dict, working_directory: str, timeout: float | None) -> StepResult:
        raise NotImplementedError

    def _run_mapped_action(self, job: Job, step: Step, timeout: float | None) -> StepResult:
        action_id = step.action_ref.split("@", 1)[0]
        command = self.actions.get(action_id)
        if command is None:
            msg = f"No local command configured for action '{action_id}'"
            if self.skip_unknown_actions:
                raise ActionSkipped(msg)
            raise StepExecutionError(msg)
        inputs = self.secrets.resolve_all(step.inputs)
        env = {**self.secrets.resolve_all({**job.env, **step.env}), **input_env(inputs)}
        return self.run_shell(job, command, env, step.working_directory, timeout)

    def _run_composite(self, job: Job, step: Step, step_inputs: dict, timeout: float | None) -> StepResult:
        ref = step.action_ref.split("@", 1)[0]
        action_dir = os.path.normpath(os.path.join(self.workdir, ref))
        definition = load_composite_action(action_dir)

        inputs = {
            name: str((spec or {}).get("default", ""))
            for name, spec in (definition.get("inputs") or {}).items()
        }
        inputs.update(self.secrets.resolve_all(step_inputs))
        base_env = {**self.secrets.resolve_all({**job.env, **step.env}), **input_env(inputs)}

        deadline = None if timeout is None else time.monotonic() + timeout
        stdout = []
        stderr = []
        exit_code = 0
        for i, raw in enumerate(definition["runs"]["steps"]):
            try:
                sub = parse_step(raw, f"{ref} step {i + 1}")
            except ConfigurationError as e:
                raise StepExecutionError(str(e)) from e
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.001)
            if sub.kind == StepKind.RUN_COMMAND:
                command = _INPUT_EXPR_RE.sub(lambda m: inputs.get(m.group(1), ""), sub.command)
                command = self.secrets.expand(command)
                env = {**base_env, **self.secrets.resolve_all(sub.env)}
                result = self.run_shell(job, command, env, sub.working_directory, remaining)
            elif sub.kind == StepKind.CHECKOUT:
                continue
            elif sub.kind == StepKind.SETUP:
                nested_inputs = {
                    k: _INPUT_EXPR_RE.sub(lambda m: inputs.get(m.group(1), ""), v) if isinstance(v, str) else v
                    for k, v in sub.inputs.items()
                }
                result = self._run_composite(job, sub, nested_inputs, remaining)
            else:
                try:
                    result = self._run_mapped_action(job, sub, remaining)
                except ActionSkipped as e:
                    stdout.append(f"{e}; skipped\n")
                    continue
            stdout.append(result.stdout)
            stderr.append(result.stderr)
            exit_code = result.exit_code
            if exit_code != 0:
                break

        return StepResult(exit_code=exit_code, stdout="".join(stdout), stderr="".join(stderr))


def load_composite_action(action_dir: str) -> dict:
    for filename in ("action.yml", "action.yaml"):
        path = os.path.join(action_dir, filename)
        if os.path.isfile(path):
            break
    else:
        raise StepExecutionError(f"No action.yml found in {action_dir}")

    try:
        with open(path) as f:
            definition = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise StepExecutionError(f"Invalid YAML in {path}: {e}") from e

    runs = definition.get("runs") if isinstance(definition, dict) else None
    if not isinstance(runs, dict) or runs.get("using") != "composite":
        raise StepExecutionError(f"{path}: only composite actions can run locally")
    if not isinstance(runs.get("steps"), list):
        raise StepExecutionError(f"{path}: composite action has no steps")
    return definition


class LocalExecutor(ShellExecutor):
    """Runs steps as bash subprocesses directly in the working directory."""

    # Seconds a step gets to exit after SIGTERM before its process group is killed.
    kill_grace = 5.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.workspace = self.workdir
        self._procs = set()
        self._lock = threading.Lock()

    def run_shell(self, job: Job, command: str, env: dict, working_directory: str, timeout: float | None) -> StepResult:
        cwd = os.path.join(self.workdir, working_directory) if working_directory else self.workdir
        full_env = {**os.environ, **self.default_env(), **env}
        cmd = ["bash", "--noprofile", "--norc", "-e", "-o", "pipefail", "-c", command]

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise StepExecutionError(f"Cannot start step: {e}") from e

        with self._lock:
            self._procs.add(proc)
        try:
            if self.cancelled:
                stdout, stderr = self._stop(proc)
            else:
                try:
                    stdout, stderr = proc.communicate(timeout=timeout)
                except subprocess.TimeoutExpired:
                    stdout, stderr = self._stop(proc)
                    raise StepExecutionError(
                        f"Timed out after {timeout:g}s", output=(stdout or "") + (stderr or "")
                    ) from None
        finally:
            with self._lock:
                self._procs.discard(proc)

        if self.cancelled:
            raise StepExecutionError("cancelled", exit_code=proc.returncode, output=(stdout or "") + (stderr or ""))

        return StepResult(exit_code=proc.returncode, stdout=stdout, stderr=stderr)

    def cancel(self) -> None:
        super().cancel()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            self._signal(proc, signal.SIGTERM)
        if procs:
            # The step threads are still in communicate(); kill whatever outlives the grace period.
            killer = threading.Timer(self.kill_grace, self._kill_remaining, args=(procs,))
            killer.daemon = True
            killer.start()

    def _stop(self, proc: subprocess.Popen) -> tuple[str, str]:
        self._signal(proc, signal.SIGTERM)
        try:
            return proc.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL)
            return proc.communicate()

    def _kill_remaining(self, procs: list) -> None:
        with self._lock:
            alive = [p for p in procs if p in self._procs]
        for proc in alive:
            self._signal(proc, signal.SIGKILL)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass


class DockerExecutor(ShellExecutor):
    """Runs each job in its own container with the working directory mounted at /workspace."""

    workspace = "/workspace"

    def __init__(self, *args, images: dict | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.images = dict(images or IMAGE_MAP)
        self.client = None
        self.containers = {}
        self._lock = threading.Lock()

    def _client(self):
        if self.client is None:
            try:
                client = docker.from_env()
                client.ping()
            except DockerException as e:
                raise StepExecutionError(f"Can't connect to Docker. Is Docker running? ({e})") from e
            self.client = client
        return self.client

    def container_name(self, job: Job) -> str:
        safe = re.sub(r"[^a-zA-Z0-9_.-]", "-", job.job_id)
        return f"piperun-{safe}-{os.getpid()}"

    def image_for(self, job: Job) -> str:
        return self.images.get(job.runs_on, IMAGE_MAP["ubuntu-latest"])

    def prepare(self, job: Job) -> None:
        client = self._client()
        image = self.image_for(job)
        name = self.container_name(job)

        try:
            try:
                client.images.get(image)
            except ImageNotFound:
                client.images.pull(image)

            # Remove stale container with same name
            try:
                client.containers.get(name).remove(force=True)
            except NotFound:
                pass

            container = client.containers.run(
                image=image,
                command="sleep infinity",
                volumes={self.workdir: {"bind": self.workspace, "mode": "rw"}},
                working_dir=self.workspace,
                environment={**self.default_env(), "DEBIAN_FRONTEND": "noninteractive"},
                name=name,
                detach=True,
            )
        except APIError as e:
            raise StepExecutionError(f"Cannot start container for {job.name}: {e}") from e

        with self._lock:
            self.containers[job.job_id] = container

    def run_shell(self, job: Job, command: str, env: dict, working_directory: str, timeout: float | None) -> StepResult:
        container = self.containers.get(job.job_id)
        if container is None:
            raise RuntimeError(f"No container for job '{job.name}'. Call prepare() first.")

        workdir = working_directory or self.workspace
        if not workdir.startswith("/"):
            workdir = f"{self.workspace}/{workdir}"

        cmd = f"bash --noprofile --norc -e -o pipefail -c {shlex.quote(command)}"
        limit = None if timeout is None else max(int(timeout), 1)
        if limit is not None:
            cmd = f"timeout -k 5 {limit} {cmd}"

        started = time.monotonic()
        try:
            result = container.exec_run(cmd, environment=env, workdir=workdir, demux=True)
        except APIError as e:
            if self.cancelled:
                raise StepExecutionError("cancelled") from e
            raise StepExecutionError(f"Docker exec failed: {e}") from e

        stdout = result.output[0].decode("utf-8", errors="replace") if result.output[0] else ""
        stderr = result.output[1].decode("utf-8", errors="replace") if result.output[1] else ""

        if self.cancelled:
            raise StepExecutionError("cancelled", exit_code=result.exit_code, output=stdout + stderr)
        # 124 is also an ordinary exit status; only blame `timeout` once the limit has passed.
        if limit is not None and result.exit_code == 124 and time.monotonic() - started >= limit:
            raise StepExecutionError(f"Timed out after {timeout:g}s", exit_code=124, output=stdout + stderr)

        return StepResult(exit_code=result.exit_code, stdout=stdout, stderr=stderr)

    def cleanup(self, job: Job) -> None:
        with self._lock:
            container = self.containers.pop(job.job_id, None)
        if container is not None:
            try:
                container.stop(timeout=3)
            except DockerException:
                pass
            try:
                container.remove(force=True)
            except DockerException:
                pass

    def cancel(self) -> None:
        super().cancel()
        with self._lock:
            containers = list(self.containers.values())
        for container in containers:
            try:
                container.stop(timeout=1)
            except DockerException:
                pass


def build_executor(config) -> StepExecutor:
    kwargs = {
        "workdir": config.workdir,
        "actions": config.actions,
        "skip_unknown_actions": config.skip_unknown_actions,
    }
    if config.executor == "docker":
        return DockerExecutor(images=config.images, **kwargs)
    return LocalExecutor(**kwargs)
