"""
Machines that host benchmark containers, and page cache control for them.
"""

import itertools
import os
import subprocess
from typing import Callable, List, Optional

from .errors import AcquisitionFailure, EnvironmentPrecondition
from .logging import decode_output, get_logger
from .models import Machine


logger = get_logger(__name__)

DROP_CACHES_PATH = "/proc/sys/vm/drop_caches"


class LocalMachineProvider:
    """
    Hands out machines backed by a single Docker daemon.

    Each acquisition checks that the daemon answers, so a missing or
    unreachable daemon surfaces as an AcquisitionFailure before any container
    is started.
    """

    def __init__(
        self,
        docker_host: Optional[str] = None,
        docker_binary: str = "docker",
        check_daemon: bool = True,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        name: str = "local",
    ):
        self.docker_host = docker_host
        self.docker_binary = docker_binary
        self.check_daemon = check_daemon
        self.runner = runner
        self.name = name
        self._counter = itertools.count()
        self._active: List[Machine] = []

    @property
    def active(self) -> List[Machine]:
        """Machines acquired and not yet released."""
        return list(self._active)

    def acquire(self) -> Machine:
        """
        Acquire a machine for exclusive use by one trial.

        Raises:
            AcquisitionFailure: If the Docker daemon cannot be reached
        """
        machine = Machine(name=f"{self.name}-{next(self._counter)}", docker_host=self.docker_host)
        if self.check_daemon:
            self._check_daemon(machine)
        self._active.append(machine)
        logger.debug("Machine acquired", machine=machine.name, docker_host=machine.docker_host)
        return machine

    def release(self, machine: Machine):
        if machine in self._active:
            self._active.remove(machine)
        logger.debug("Machine released", machine=machine.name)

    def _check_daemon(self, machine: Machine):
        cmd = [self.docker_binary]
        if machine.docker_host:
            cmd.extend(["-H", machine.docker_host])
        cmd.extend(["version", "--format", "{{.Server.Version}}"])
        try:
            result = self.runner(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AcquisitionFailure(f"failed to get machine: {e}")
        if result.returncode != 0:
            raise AcquisitionFailure(
                f"failed to get machine: docker daemon unreachable (status {result.returncode})",
                output=decode_output(result.stdout),
            )


class CacheController:
    """
    Drops the kernel page cache of a machine before a measurement.

    Local machines are handled by writing to /proc directly, which needs
    root. Remote daemons get a short-lived privileged helper container.
    """

    def __init__(
        self,
        docker_binary: str = "docker",
        helper_image: str = "alpine",
        proc_path: str = DROP_CACHES_PATH,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sync_fn: Callable[[], None] = os.sync,
    ):
        self.docker_binary = docker_binary
        self.helper_image = helper_image
        self.proc_path = proc_path
        self.runner = runner
        self.sync_fn = sync_fn

    def drop_caches(self, machine: Machine):
        """
        Raises:
            EnvironmentPrecondition: If the cache could not be dropped
        """
        if machine.is_local:
            self._drop_local()
        else:
            self._drop_remote(machine)
        logger.debug("Page cache dropped", machine=machine.name)

    def _drop_local(self):
        self.sync_fn()
        try:
            with open(self.proc_path, "w") as f:
                f.write("3\n")
        except OSError as e:
            raise EnvironmentPrecondition(f"failed to drop caches: {e}. You probably need root.")

    def _drop_remote(self, machine: Machine):
        cmd = [
            self.docker_binary, "-H", machine.docker_host,
            "run", "--rm", "--privileged", self.helper_image,
            "sh", "-c", f"sync && echo 3 > {self.proc_path}",
        ]
        try:
            result = self.runner(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=120)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EnvironmentPrecondition(f"failed to drop caches on {machine.name}: {e}")
        if result.returncode != 0:
            raise EnvironmentPrecondition(
                f"failed to drop caches on {machine.name}: status {result.returncode}",
                output=decode_output(result.stdout),
            )
