import json
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from serving_bench.config import BenchmarkConfig
from serving_bench.core import BenchmarkCore, MeasurementTimer, MetricsReporter, RunProgress
from serving_bench.errors import (
    AcquisitionFailure,
    EnvironmentPrecondition,
    ReadinessTimeout,
    StartupFailure,
    WorkloadExecutionFailure,
)
from serving_bench.models import Container, Machine, RunStatus, TrialStatus
from serving_bench.storage import StorageManager


RESULT = {"completed": 42, "request_throughput": 3.5, "median_ttft_ms": 12.1, "median_tpot_ms": 4.4}


class Events(list):
    pass


class StubProvider:
    def __init__(self, role, events, fail=None):
        self.role = role
        self.events = events
        self.fail = fail
        self.count = 0
        self.active = []

    def acquire(self):
        if self.fail:
            raise self.fail
        machine = Machine(name=f"{self.role}-{self.count}")
        self.count += 1
        self.active.append(machine)
        self.events.append(f"acquire:{self.role}")
        return machine

    def release(self, machine):
        self.active.remove(machine)
        self.events.append(f"release:{self.role}")


class StubCache:
    def __init__(self, events, fail=None):
        self.events = events
        self.fail = fail

    def drop_caches(self, machine):
        self.events.append("drop_caches")
        if self.fail:
            raise self.fail


class StubRuntime:
    """Plays back server and client behaviour; the client writes its results into the mounted directory."""

    def __init__(self, events, results=None, await_error=None, start_error=None):
        self.events = events
        self.results = list(results) if results is not None else [RESULT]
        self.await_error = await_error
        self.start_error = start_error
        self.client_options = []
        self._lock = threading.Lock()
        self._started = 0

    def start(self, machine, options, role="server"):
        if self.start_error:
            raise self.start_error
        with self._lock:
            self._started += 1
            name = f"srv{self._started}"
        self.events.append("start")
        return Container(name=name, machine=machine, image=options.image)

    def await_output_pattern(self, container, pattern, timeout):
        self.events.append("await")
        if self.await_error:
            raise self.await_error
        return "INFO: Uvicorn running on http://0.0.0.0:8000"

    def run_to_completion(self, machine, options, timeout=None, role="client"):
        self.events.append("client")
        with self._lock:
            self.client_options.append(options)
            outcome = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            result_dir = Path(options.mounts[0].source)
            (result_dir / "openai-result.json").write_text(json.dumps(outcome), encoding="utf-8")
        return "Serving Benchmark Result\n"

    def logs(self, container):
        return f"logs of {container.name}\n"

    @staticmethod
    def make_link(container, alias):
        return f"{container.name}:{alias}"

    def cleanup(self, container):
        self.events.append("cleanup")


class RecordingVisualizer:
    def __init__(self, events, fail=False):
        self.events = events
        self.fail = fail

    def visualize(self, container):
        self.events.append("visualize")
        if self.fail:
            raise RuntimeError("no logs")


def make_core(tmp_path, runtime=None, events=None, storage=False, cache=None, **config):
    events = events if events is not None else Events()
    config.setdefault("drop_caches", cache is not None)
    cfg = BenchmarkConfig(storage_path=str(tmp_path / "runs"), **config)
    return BenchmarkCore(
        config=cfg,
        runtime=runtime or StubRuntime(events),
        server_provider=StubProvider("server", events),
        client_provider=StubProvider("client", events),
        cache_control=cache,
        storage_manager=StorageManager(cfg.storage_path) if storage else None,
    )


def test_trial_reports_metrics_from_client_result(tmp_path):
    core = make_core(tmp_path)

    trial = core.run_trial()

    assert trial.status == TrialStatus.OK
    assert trial.metrics.completed == 42
    assert trial.reported["requests"] == 42
    assert trial.reported["request_throughput"] == 3.5
    assert trial.reported["median_ttft_ms"] == 12.1
    assert trial.reported["median_tpot_ms"] == 4.4
    assert trial.reported["input_tok_throughput"] == 0.0
    assert core.reporter.metrics["requests"] == 42


def test_trial_steps_and_teardown_order(tmp_path):
    events = Events()
    core = make_core(tmp_path, events=events, cache=StubCache(events))

    trial = core.run_trial(visualizer=RecordingVisualizer(events))

    assert trial.succeeded
    assert events == [
        "acquire:server",
        "drop_caches",
        "start",
        "await",
        "acquire:client",
        "client",
        "release:client",
        "visualize",
        "cleanup",
        "release:server",
    ]


def test_client_options_link_mount_and_arguments(tmp_path):
    events = Events()
    runtime = StubRuntime(events)
    core = make_core(tmp_path, runtime=runtime, events=events, dataset="/data/sharegpt.json")

    core.run_trial()

    options = runtime.client_options[0]
    assert options.links == ("srv1:vllmctr",)
    assert options.mounts[0].target == "/tmp"
    assert options.command[0] == "/vllm/benchmarks/benchmark_serving.py"
    assert options.command[options.command.index("--dataset") + 1] == "/data/sharegpt.json"
    assert options.command[-2:] == ("--result-dir", "/tmp")
    assert "--save-result" in options.command
    # The per-trial results directory is gone once the trial ends.
    assert not Path(options.mounts[0].source).exists()


def test_server_options_follow_config(tmp_path):
    core = make_core(tmp_path, server_image="vllm/vllm-openai:v0.5", server_cpuset="0-3", server_gpus=None)

    options = core.server_run_options()

    assert options.image == "vllm/vllm-openai:v0.5"
    assert options.cpuset_cpus == "0-3"
    assert options.gpus is None
    assert options.env == ("PYTHONPATH=$PYTHONPATH:/vllm",)


def test_cache_failure_skips_trial_without_starting_server(tmp_path):
    events = Events()
    cache = StubCache(events, fail=EnvironmentPrecondition("failed to drop caches. You probably need root."))
    core = make_core(tmp_path, events=events, cache=cache)

    run = core.run_benchmark(iterations=3)

    assert run.status == RunStatus.SKIPPED
    assert len(run.trials) == 1
    assert run.trials[0].status == TrialStatus.SKIPPED
    assert "start" not in events
    assert events[-1] == "release:server"
    assert run.failed_trials == []


def test_readiness_timeout_aborts_run_and_cleans_up(tmp_path):
    events = Events()
    runtime = StubRuntime(events, await_error=ReadinessTimeout("timed out", output="loading model"))
    core = make_core(tmp_path, runtime=runtime, events=events)

    run = core.run_benchmark(iterations=3)

    assert run.status == RunStatus.ABORTED
    assert len(run.trials) == 1
    trial = run.trials[0]
    assert trial.status == TrialStatus.FATAL
    assert trial.error_type == "ReadinessTimeout"
    assert trial.output == "loading model"
    assert "client" not in events
    assert events[-2:] == ["cleanup", "release:server"]
    assert core.server_provider.active == []


def test_startup_failure_is_fatal(tmp_path):
    events = Events()
    runtime = StubRuntime(events, start_error=StartupFailure("no such image"))
    core = make_core(tmp_path, runtime=runtime, events=events)

    trial = core.run_trial()

    assert trial.status == TrialStatus.FATAL
    assert "cleanup" not in events
    assert events == ["acquire:server", "release:server"]


def test_acquisition_failure_is_fatal(tmp_path):
    events = Events()
    core = make_core(tmp_path, events=events)
    core.server_provider = StubProvider("server", events, fail=AcquisitionFailure("daemon unreachable"))

    run = core.run_benchmark(iterations=2)

    assert run.status == RunStatus.ABORTED
    assert run.trials[0].error_type == "AcquisitionFailure"
    assert events == []


def test_client_failure_continues_with_next_trial(tmp_path):
    events = Events()
    runtime = StubRuntime(events, results=[WorkloadExecutionFailure("exit 1", output="Traceback"), RESULT])
    core = make_core(tmp_path, runtime=runtime, events=events)

    run = core.run_benchmark(iterations=2)

    assert run.status == RunStatus.COMPLETED
    assert [t.status for t in run.trials] == [TrialStatus.ERROR, TrialStatus.OK]
    assert run.trials[0].output == "Traceback"
    assert len(run.failed_trials) == 1
    assert run.reported["requests"] == 42
    assert events.count("cleanup") == 2
    assert events.count("release:client") == 2


def test_missing_result_file_is_trial_error(tmp_path):
    events = Events()
    runtime = StubRuntime(events, results=[None])
    core = make_core(tmp_path, runtime=runtime, events=events)

    trial = core.run_trial()

    assert trial.status == TrialStatus.ERROR
    assert trial.error_type == "NotFound"
    assert trial.output == "Serving Benchmark Result\n"
    assert trial.metrics is None
    assert core.reporter.metrics == {}


def test_last_reported_value_wins(tmp_path):
    events = Events()
    runtime = StubRuntime(events, results=[{"completed": 10}, {"completed": 20}])
    core = make_core(tmp_path, runtime=runtime, events=events)

    run = core.run_benchmark(iterations=2)

    assert [t.reported["requests"] for t in run.trials] == [10, 20]
    assert run.reported["requests"] == 20


def test_visualizer_failure_does_not_fail_trial(tmp_path):
    events = Events()
    core = make_core(tmp_path, events=events)

    trial = core.run_trial(visualizer=RecordingVisualizer(events, fail=True))

    assert trial.succeeded
    assert "cleanup" in events


def test_measured_time_covers_client_only(tmp_path):
    ticks = iter([100.0, 102.5])
    core = make_core(tmp_path)
    core.clock = lambda: next(ticks)

    trial = core.run_trial()

    assert trial.measured_seconds == 2.5


def test_concurrent_trials_use_separate_result_directories(tmp_path):
    events = Events()
    barrier = threading.Barrier(2, timeout=5)

    class BarrierRuntime(StubRuntime):
        def run_to_completion(self, machine, options, timeout=None, role="client"):
            barrier.wait()
            return super().run_to_completion(machine, options, timeout, role)

    runtime = BarrierRuntime(events, results=[{"completed": 1}, {"completed": 2}])
    core = make_core(tmp_path, runtime=runtime, events=events)
    trials = [None, None]

    def worker(i):
        trials[i] = core.run_trial(index=i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(t.succeeded for t in trials)
    assert sorted(t.metrics.completed for t in trials) == [1, 2]
    sources = {options.mounts[0].source for options in runtime.client_options}
    assert len(sources) == 2


def test_run_is_persisted_with_log_artifacts(tmp_path):
    core = make_core(tmp_path, storage=True)

    run = core.run_benchmark(iterations=2, run_name="vllm smoke")

    storage = core.storage_manager
    assert run.run_id.startswith("vllm-smoke_")
    trials = storage.load_trials(run.run_id)
    assert [t.index for t in trials] == [0, 1]
    assert trials[1].metrics.median_tpot_ms == 4.4
    metadata = storage.get_run_metadata(run.run_id)
    assert metadata["status"] == "completed"
    assert metadata["reported"]["requests"] == 42
    assert metadata["config"]["server_image"] == "benchmarks/vllm"
    logs = sorted(p.name for p in storage.logs_path(run.run_id).iterdir())
    assert logs == ["srv1.log", "srv2.log"]


def test_shutdown_request_interrupts_between_trials(tmp_path):
    core = make_core(tmp_path)
    core.progress_callback = lambda progress: core.request_shutdown()

    run = core.run_benchmark(iterations=3)

    assert run.status == RunStatus.INTERRUPTED
    assert len(run.trials) == 1


def test_iterations_must_be_positive(tmp_path):
    core = make_core(tmp_path)

    with pytest.raises(ValueError):
        core.run_benchmark(iterations=0)


def test_drop_caches_requires_cache_control(tmp_path):
    with pytest.raises(ValueError, match="cache_control"):
        make_core(tmp_path, drop_caches=True)


def test_measurement_timer_accumulates():
    ticks = iter([0.0, 1.0, 5.0, 7.0])
    timer = MeasurementTimer(lambda: next(ticks))

    timer.start()
    timer.stop()
    timer.start()
    assert timer.running
    timer.stop()

    assert timer.elapsed == 3.0
    assert not timer.running


def test_metrics_reporter_overwrites():
    reporter = MetricsReporter()

    reporter.report_metric(1, "requests")
    reporter.report_metric(2, "requests")

    assert reporter.metrics == {"requests": 2.0}


def test_run_progress_counts():
    progress = RunProgress(4)

    progress.update(TrialStatus.OK)
    progress.update(TrialStatus.ERROR)

    assert progress.processed_trials == 2
    assert progress.success_rate == 50.0
    assert progress.completion_rate == 50.0


class FailingTrialStorage(StorageManager):
    def save_trial(self, run_id, trial):
        raise OSError(28, "No space left on device")


def test_storage_failure_marks_run_aborted(tmp_path):
    core = make_core(tmp_path)
    core.storage_manager = FailingTrialStorage(str(tmp_path / "runs"))

    with pytest.raises(OSError):
        core.run_benchmark(iterations=2)

    storage = core.storage_manager
    [run_id] = storage.list_runs()
    metadata = storage.get_run_metadata(run_id)
    assert metadata["status"] == "aborted"
    assert metadata["reported"]["requests"] == 42
    assert "finished_at" in metadata


def test_unexpected_error_marks_stored_run_aborted(tmp_path):
    events = Events()

    class BrokenRuntime(StubRuntime):
        def await_output_pattern(self, container, pattern, timeout):
            raise RuntimeError("docker client crashed")

    core = make_core(tmp_path, runtime=BrokenRuntime(events), events=events, storage=True)

    with pytest.raises(RuntimeError):
        core.run_benchmark(iterations=2)

    storage = core.storage_manager
    [run_id] = storage.list_runs()
    assert storage.get_run_metadata(run_id)["status"] == "aborted"
    assert events[-2:] == ["cleanup", "release:server"]
