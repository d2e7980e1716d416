"""
Container workload runtime backed by the docker CLI.
"""

import re
import subprocess
import time
import uuid
from typing import Callable, List, Optional

from .errors import BenchmarkError, StartupFailure, ReadinessTimeout, WorkloadExecutionFailure
from .logging import decode_output, get_logger, tail_output
from .models import Container, Machine, RunOptions


logger = get_logger(__name__)


class DockerRuntime:
    """
    Starts, watches and removes containers through the ``docker`` binary.

    Every call merges stderr into stdout, so captured output reads the same
    way it would in a terminal. Output is captured as bytes and decoded as
    UTF-8 with replacement. A machine with a ``docker_host`` is addressed with
    ``docker -H``.
    """

    def __init__(
        self,
        docker_binary: str = "docker",
        poll_interval: float = 1.0,
        name_prefix: str = "serving-bench",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the runtime.

        Args:
            docker_binary: Path or name of the docker executable
            poll_interval: Seconds between log polls while awaiting readiness
            name_prefix: Prefix for generated container names
            runner: subprocess.run compatible callable
            clock: Monotonic clock used for readiness deadlines
            sleep_fn: Sleep function used between polls
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.docker_binary = docker_binary
        self.poll_interval = poll_interval
        self.name_prefix = name_prefix
        self.runner = runner
        self.clock = clock
        self.sleep_fn = sleep_fn

    def _docker(self, machine: Machine, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.docker_binary]
        if machine.docker_host:
            cmd.extend(["-H", machine.docker_host])
        cmd.extend(args)
        return self.runner(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )

    def _new_name(self, role: str) -> str:
        return f"{self.name_prefix}-{role}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def build_run_args(options: RunOptions) -> List[str]:
        """Translate RunOptions into ``docker run`` flags, image and command."""
        args: List[str] = []
        if options.cpuset_cpus:
            args.extend(["--cpuset-cpus", options.cpuset_cpus])
        if options.gpus:
            args.extend(["--gpus", options.gpus])
        for entry in options.env:
            args.extend(["-e", entry])
        for mount in options.mounts:
            args.extend(["--mount", f"type={mount.kind},source={mount.source},target={mount.target}"])
        for link in options.links:
            args.extend(["--link", link])
        args.append(options.image)
        args.extend(options.command)
        return args

    def start(self, machine: Machine, options: RunOptions, role: str = "server") -> Container:
        """
        Start a detached container.

        Raises:
            StartupFailure: If docker cannot launch the container
        """
        name = self._new_name(role)
        try:
            result = self._docker(machine, "run", "-d", "--name", name, *self.build_run_args(options))
        except OSError as e:
            raise StartupFailure(f"failed to run container: {e}")

        if result.returncode != 0:
            raise StartupFailure(
                f"failed to run container {name}: docker exited with status {result.returncode}",
                output=decode_output(result.stdout),
            )

        logger.info("Container started", container=name, image=options.image, machine=machine.name)
        return Container(name=name, machine=machine, image=options.image)

    def logs(self, container: Container) -> str:
        """Return everything the container has written so far."""
        try:
            result = self._docker(container.machine, "logs", container.name)
        except OSError as e:
            raise BenchmarkError(f"failed to read logs of {container.name}: {e}")
        output = decode_output(result.stdout)
        if result.returncode != 0:
            raise BenchmarkError(f"failed to read logs of {container.name}", output=output)
        return output

    def is_running(self, container: Container) -> bool:
        try:
            result = self._docker(container.machine, "inspect", "-f", "{{.State.Running}}", container.name)
        except OSError:
            return False
        return result.returncode == 0 and decode_output(result.stdout).strip() == "true"

    def await_output_pattern(self, container: Container, pattern: str, timeout: float) -> str:
        """
        Block until ``pattern`` (a regular expression) shows up in the logs.

        Returns:
            The captured output up to the match

        Raises:
            ReadinessTimeout: If the pattern does not appear within ``timeout`` seconds
            StartupFailure: If the container stops or its logs become unreadable
        """
        regex = re.compile(pattern)
        deadline = self.clock() + timeout
        output = ""

        while True:
            try:
                output = self.logs(container)
            except BenchmarkError as e:
                raise StartupFailure(str(e), output=e.output or output)

            if regex.search(output):
                logger.info("Container is ready", container=container.name, pattern=pattern)
                return output

            if not self.is_running(container):
                raise StartupFailure(
                    f"container {container.name} exited before printing {pattern!r}",
                    output=output,
                )

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"timed out after {timeout}s waiting for {pattern!r} from {container.name}",
                    output=output,
                )
            self.sleep_fn(min(self.poll_interval, remaining))

    def run_to_completion(
        self,
        machine: Machine,
        options: RunOptions,
        timeout: Optional[float] = None,
        role: str = "client",
    ) -> str:
        """
        Run a container in the foreground and return its combined output.

        Raises:
            WorkloadExecutionFailure: On launch failure, non-zero exit or timeout
        """
        name = self._new_name(role)
        logger.info("Running container", container=name, image=options.image, machine=machine.name, timeout=timeout)
        try:
            result = self._docker(machine, "run", "--rm", "--name", name, *self.build_run_args(options), timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._remove(machine, name)
            raise WorkloadExecutionFailure(
                f"container {name} did not finish within {timeout}s",
                output=decode_output(e.output),
            )
        except OSError as e:
            raise WorkloadExecutionFailure(f"failed to run container: {e}")

        output = decode_output(result.stdout)
        if result.returncode != 0:
            raise WorkloadExecutionFailure(
                f"container {name} exited with status {result.returncode}",
                output=output,
            )
        logger.debug("Container finished", container=name, output=tail_output(output, 500))
        return output

    @staticmethod
    def make_link(container: Container, alias: str) -> str:
        """Link spec exposing ``container`` to another container as ``alias``."""
        return f"{container.name}:{alias}"

    def cleanup(self, container: Container):
        """Force-remove a container; failures are logged, not raised."""
        self._remove(container.machine, container.name)

    def _remove(self, machine: Machine, name: str):
        try:
            result = self._docker(machine, "rm", "-f", name)
        except OSError as e:
            logger.warning("Failed to remove container", container=name, error=str(e))
            return
        if result.returncode != 0:
            logger.warning("Failed to remove container", container=name, output=tail_output(decode_output(result.stdout), 500))
        else:
            logger.debug("Container removed", container=name)
