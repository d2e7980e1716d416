"""
Core benchmark orchestration.

A trial walks through a fixed sequence of steps: acquire the server machine,
drop its page cache, start the server container, wait for its readiness line,
acquire the client machine, then run the load generator inside a timed window
and turn its result file into metrics. Everything a trial acquires is released
when the trial ends, whichever way it ends.
"""

import signal
import tempfile
import time
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import BenchmarkConfig
from .errors import EnvironmentPrecondition, FatalTrialError, TrialError
from .logging import ErrorReporter, get_logger
from .logviz import ContainerLogArchiver
from .models import (
    BenchmarkRun,
    Container,
    Mount,
    RunOptions,
    RunStatus,
    TrialResult,
    TrialStatus,
)
from .results import MetricsRecord, extract_metrics
from .storage import StorageManager


logger = get_logger(__name__)
error_reporter = ErrorReporter(logger)

# (reported name, MetricsRecord field)
REPORTED_METRICS = (
    ("requests", "completed"),
    ("request_throughput", "request_throughput"),
    ("input_tok_throughput", "input_throughput"),
    ("output_tok_throughput", "output_throughput"),
    ("median_ttft_ms", "median_ttft_ms"),
    ("median_tpot_ms", "median_tpot_ms"),
)

EXTRA_METRICS = (
    ("duration_s", "duration"),
    ("total_input_tokens", "total_input_tokens"),
    ("total_output_tokens", "total_output_tokens"),
    ("mean_ttft_ms", "mean_ttft_ms"),
    ("p99_ttft_ms", "p99_ttft_ms"),
    ("mean_tpot_ms", "mean_tpot_ms"),
    ("p99_tpot_ms", "p99_tpot_ms"),
)


class MeasurementTimer:
    """Accumulates wall-clock time between start() and stop() calls."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self._elapsed = 0.0
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self):
        if self._started_at is None:
            self._started_at = self.clock()

    def stop(self):
        if self._started_at is not None:
            self._elapsed += self.clock() - self._started_at
            self._started_at = None

    @property
    def elapsed(self) -> float:
        if self._started_at is not None:
            return self._elapsed + (self.clock() - self._started_at)
        return self._elapsed


class MetricsReporter:
    """Named metric observations; a later report of the same name replaces the earlier one."""

    def __init__(self):
        self.metrics: Dict[str, float] = {}

    def report_metric(self, value: float, name: str):
        self.metrics[name] = float(value)


class RunProgress:
    """Tracks progress of a benchmark run."""

    def __init__(self, total_trials: int):
        self.total_trials = total_trials
        self.completed_trials = 0
        self.failed_trials = 0
        self.skipped_trials = 0
        self.start_time = datetime.now()
        self.last_update = self.start_time

    def update(self, status: TrialStatus):
        """Update progress counters with a finished trial."""
        if status == TrialStatus.OK:
            self.completed_trials += 1
        elif status == TrialStatus.SKIPPED:
            self.skipped_trials += 1
        else:
            self.failed_trials += 1
        self.last_update = datetime.now()

    @property
    def processed_trials(self) -> int:
        return self.completed_trials + self.failed_trials + self.skipped_trials

    @property
    def success_rate(self) -> float:
        """Calculate success rate as a percentage."""
        if self.processed_trials == 0:
            return 0.0
        return (self.completed_trials / self.processed_trials) * 100

    @property
    def completion_rate(self) -> float:
        """Calculate completion rate as a percentage."""
        return (self.processed_trials / self.total_trials) * 100

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time in seconds."""
        return (self.last_update - self.start_time).total_seconds()

    @property
    def estimated_remaining_time(self) -> Optional[float]:
        """Estimate remaining time in seconds."""
        processed = self.processed_trials
        if processed == 0 or processed >= self.total_trials or self.elapsed_time <= 0:
            return None
        rate = processed / self.elapsed_time
        return (self.total_trials - processed) / rate


class BenchmarkCore:
    """
    Orchestrates server/client trials and the repeated-trial loop.

    All collaborators are passed in explicitly:

    - ``runtime``: starts, awaits and runs containers (see DockerRuntime)
    - ``server_provider`` / ``client_provider``: ``acquire()`` and ``release()`` machines
    - ``cache_control``: ``drop_caches(machine)``
    - ``visualizer``: ``visualize(container)``, called after each trial for the server
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        runtime,
        server_provider,
        client_provider=None,
        cache_control=None,
        storage_manager: Optional[StorageManager] = None,
        visualizer=None,
        progress_callback: Optional[Callable[[RunProgress], None]] = None,
        clock: Callable[[], float] = time.perf_counter,
        install_signal_handlers: bool = False,
    ):
        """
        Initialize the benchmark coordinator.

        Args:
            config: Benchmark configuration
            runtime: Workload runtime
            server_provider: Provider for the server machine
            client_provider: Provider for the client machine (defaults to server_provider)
            cache_control: Page cache controller, required when config.drop_caches is set
            storage_manager: Optional storage for runs and trials
            visualizer: Optional log visualizer (defaults to archiving logs into the run folder)
            progress_callback: Optional callback invoked after each trial
            clock: Clock used for the measurement window
            install_signal_handlers: Stop between trials on SIGINT/SIGTERM
        """
        if config.drop_caches and cache_control is None:
            raise ValueError("cache_control is required when drop_caches is enabled")

        self.config = config
        self.runtime = runtime
        self.server_provider = server_provider
        self.client_provider = client_provider or server_provider
        self.cache_control = cache_control
        self.storage_manager = storage_manager
        self.visualizer = visualizer
        self.progress_callback = progress_callback
        self.clock = clock
        self.reporter = MetricsReporter()
        self._shutdown_requested = False
        if install_signal_handlers:
            self._setup_signal_handlers()

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info("Received signal, stopping after the current trial", signum=signum)
            self._shutdown_requested = True

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def request_shutdown(self):
        self._shutdown_requested = True

    def server_run_options(self) -> RunOptions:
        cfg = self.config
        return RunOptions(
            image=cfg.server_image,
            env=tuple(cfg.server_env),
            cpuset_cpus=cfg.server_cpuset,
            gpus=cfg.server_gpus,
        )

    def client_run_options(self, server: Container, results_dir: Path) -> RunOptions:
        cfg = self.config
        return RunOptions(
            image=cfg.client_image,
            env=tuple(cfg.client_env),
            cpuset_cpus=cfg.client_cpuset,
            # The client only reports JSON to a file, so give it a directory to write into.
            mounts=(Mount(source=str(results_dir), target=cfg.result_mount, kind="bind"),),
            links=(self.runtime.make_link(server, cfg.server_alias),),
            command=(
                cfg.client_script,
                "--host", cfg.server_alias,
                "--model", cfg.model,
                "--tokenizer", cfg.tokenizer,
                "--endpoint", cfg.endpoint,
                "--backend", cfg.backend,
                "--dataset", cfg.dataset,
                "--save-result",
                "--result-dir", cfg.result_mount,
            ),
        )

    def run_trial(self, index: int = 0, visualizer=None) -> TrialResult:
        """
        Run one server/client trial.

        Never raises for benchmark failures: the returned TrialResult carries
        the status (ok, error, skipped or fatal), the metrics on success, and
        the error with captured output otherwise.
        """
        visualizer = visualizer or self.visualizer
        result = TrialResult(index=index, status=TrialStatus.OK, started_at=datetime.now())
        timer = MeasurementTimer(self.clock)
        stage = "acquire_server"

        try:
            with ExitStack() as stack:
                server_machine = self.server_provider.acquire()
                stack.callback(self.server_provider.release, server_machine)

                if self.config.drop_caches:
                    stage = "drop_caches"
                    self.cache_control.drop_caches(server_machine)

                stage = "start_server"
                server_options = self.server_run_options()
                logger.info(
                    "Starting server",
                    trial=index,
                    image=server_options.image,
                    cpuset=server_options.cpuset_cpus,
                    env=error_reporter.sanitize_env(server_options.env),
                )
                server = self.runtime.start(server_machine, server_options)
                stack.callback(self.runtime.cleanup, server)
                if visualizer is not None:
                    # Registered after cleanup so it runs first, while the logs still exist.
                    stack.callback(self._visualize, visualizer, server)

                stage = "await_ready"
                self.runtime.await_output_pattern(server, self.config.ready_pattern, self.config.ready_timeout)

                stage = "acquire_client"
                client_machine = self.client_provider.acquire()
                stack.callback(self.client_provider.release, client_machine)

                results_dir = Path(stack.enter_context(
                    tempfile.TemporaryDirectory(prefix="serving-bench-", ignore_cleanup_errors=True)
                ))

                stage = "run_client"
                client_options = self.client_run_options(server, results_dir)
                timer.start()
                try:
                    result.output = self.runtime.run_to_completion(
                        client_machine, client_options, timeout=self.config.client_timeout
                    )
                finally:
                    timer.stop()

                stage = "extract_metrics"
                metrics = extract_metrics(results_dir, self.config.result_suffix)

                stage = "publish"
                result.metrics = metrics
                result.reported = self._publish(metrics)

        except EnvironmentPrecondition as e:
            self._record_failure(result, e, TrialStatus.SKIPPED, stage)
        except FatalTrialError as e:
            self._record_failure(result, e, TrialStatus.FATAL, stage)
        except TrialError as e:
            self._record_failure(result, e, TrialStatus.ERROR, stage)
        finally:
            result.measured_seconds = timer.elapsed
            result.finished_at = datetime.now()

        if result.succeeded:
            logger.info(
                "Trial completed",
                trial=index,
                measured_seconds=round(result.measured_seconds, 3),
                **result.reported,
            )
        return result

    def _publish(self, metrics: MetricsRecord) -> Dict[str, float]:
        reported = {}
        for name, field_name in REPORTED_METRICS + EXTRA_METRICS:
            value = float(getattr(metrics, field_name))
            self.reporter.report_metric(value, name)
            reported[name] = value
        return reported

    def _visualize(self, visualizer, container: Container):
        try:
            visualizer.visualize(container)
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to visualize container logs", container=container.name, error=str(e))

    @staticmethod
    def _record_failure(result: TrialResult, error: Exception, status: TrialStatus, stage: str):
        result.status = status
        result.error_type = type(error).__name__
        result.error = str(error)
        result.output = getattr(error, "output", "") or result.output
        severity = {
            TrialStatus.SKIPPED: "skipped",
            TrialStatus.FATAL: "fatal",
        }.get(status, "error")
        error_reporter.report_trial_error(error, trial=result.index, stage=stage, severity=severity)

    def _run_trials(self, run: BenchmarkRun, iterations: int, visualizer, progress: RunProgress):
        run_id = run.run_id
        for index in range(iterations):
            if self._shutdown_requested:
                logger.info("Shutdown requested, stopping before next trial", trial=index)
                run.status = RunStatus.INTERRUPTED
                return

            trial = self.run_trial(index, visualizer=visualizer)
            run.trials.append(trial)

            if self.storage_manager is not None:
                try:
                    self.storage_manager.save_trial(run_id, trial)
                except OSError as e:
                    error_reporter.report_storage_error(e, "save_trial", run_id=run_id, trial=index)
                    raise

            progress.update(trial.status)
            if self.progress_callback:
                self.progress_callback(progress)

            if trial.status == TrialStatus.SKIPPED:
                run.status = RunStatus.SKIPPED
                return
            if trial.status == TrialStatus.FATAL:
                run.status = RunStatus.ABORTED
                return

    def run_benchmark(self, iterations: Optional[int] = None, run_name: Optional[str] = None) -> BenchmarkRun:
        """
        Run trials one after another.

        A skipped trial or a fatal error ends the run; trial-level errors are
        recorded and the next trial starts.

        Args:
            iterations: Number of trials (defaults to config.iterations)
            run_name: Human-readable name for the stored run

        Returns:
            BenchmarkRun with every executed trial
        """
        iterations = iterations if iterations is not None else self.config.iterations
        if iterations < 1:
            raise ValueError("iterations must be >= 1")

        run_id = None
        visualizer = self.visualizer
        if self.storage_manager is not None:
            run_id = self.storage_manager.create_run(self.config.dict(), run_name)
            if visualizer is None:
                visualizer = ContainerLogArchiver(self.runtime, self.storage_manager.logs_path(run_id))

        run = BenchmarkRun(run_id=run_id)
        progress = RunProgress(iterations)

        logger.info(
            "Starting benchmark run",
            run_id=run_id,
            iterations=iterations,
            server_image=self.config.server_image,
            client_image=self.config.client_image,
        )

        try:
            self._run_trials(run, iterations, visualizer, progress)
        except KeyboardInterrupt:
            run.status = RunStatus.INTERRUPTED
            raise
        except Exception as e:
            logger.error("Benchmark run aborted", run_id=run_id, error=str(e), error_type=type(e).__name__)
            run.status = RunStatus.ABORTED
            raise
        finally:
            run.reported = dict(self.reporter.metrics)
            if self.storage_manager is not None:
                self.storage_manager.update_run_status(run_id, run.status.value, run.reported)

        logger.info(
            "Benchmark run finished",
            run_id=run_id,
            status=run.status.value,
            trials=len(run.trials),
            failed_trials=len(run.failed_trials),
            total_time=round(progress.elapsed_time, 1),
        )
        return run
