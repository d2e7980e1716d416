"""
Command-line interface for serving-bench.
"""

import sys
from typing import Optional

import click

from .config import load_config_with_auto_discovery, BenchmarkConfig
from .core import BenchmarkCore, RunProgress, REPORTED_METRICS
from .logging import setup_logging, get_logger
from .machines import CacheController, LocalMachineProvider
from .models import RunStatus
from .runtime import DockerRuntime
from .storage import StorageManager


logger = get_logger(__name__)


def setup_progress_callback(verbose: bool = False):
    """Create a progress callback function for CLI output."""

    def progress_callback(progress: RunProgress):
        click.echo(f"Trial {progress.processed_trials}/{progress.total_trials} "
                   f"({progress.completion_rate:.1f}%) - "
                   f"ok: {progress.completed_trials}, failed: {progress.failed_trials}, "
                   f"skipped: {progress.skipped_trials} - "
                   f"Elapsed: {progress.elapsed_time:.1f}s")

        remaining_time = progress.estimated_remaining_time
        if verbose and remaining_time:
            click.echo(f"Estimated remaining time: {remaining_time:.1f}s")

    return progress_callback


def build_core(config: BenchmarkConfig, storage_manager: StorageManager, progress_callback=None) -> BenchmarkCore:
    """Wire the docker-backed collaborators into a BenchmarkCore."""
    runtime = DockerRuntime(docker_binary=config.docker_binary, poll_interval=config.poll_interval)
    provider = LocalMachineProvider(docker_host=config.docker_host, docker_binary=config.docker_binary)
    return BenchmarkCore(
        config=config,
        runtime=runtime,
        server_provider=provider,
        cache_control=CacheController(docker_binary=config.docker_binary),
        storage_manager=storage_manager,
        progress_callback=progress_callback,
        install_signal_handlers=True,
    )


@click.group()
@click.version_option(package_name="serving-bench")
@click.option('--config', '-c',
              help='Path to configuration file')
@click.option('--storage-path',
              help='Path to store run data (overrides config)',
              envvar='SERVING_BENCH_STORAGE_PATH')
@click.option('--log-level',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level (overrides config)')
@click.option('--log-file',
              help='Log file path (overrides config)')
@click.pass_context
def cli(ctx, config: Optional[str], storage_path: Optional[str],
        log_level: Optional[str], log_file: Optional[str]):
    """Serving Bench - measure LLM inference server throughput and latency in containers."""
    ctx.ensure_object(dict)

    config_overrides = {}
    if storage_path:
        config_overrides['storage_path'] = storage_path
    if log_level:
        config_overrides['log_level'] = log_level.upper()
    if log_file:
        config_overrides['log_file'] = log_file

    try:
        benchmark_config = load_config_with_auto_discovery(
            config_file=config,
            config_overrides=config_overrides
        )
        benchmark_logger = setup_logging(benchmark_config)

        ctx.obj['config'] = benchmark_config
        ctx.obj['benchmark_logger'] = benchmark_logger
        ctx.obj['storage_manager'] = StorageManager(benchmark_config.storage_path)

        logger.debug("CLI initialized", storage_path=benchmark_config.storage_path)

    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Error initializing configuration: {e}", err=True)
        sys.exit(1)


@cli.command('run')
@click.option('--iterations', '-n', type=int, help='Number of trials (overrides config)')
@click.option('--server-image', help='Server image (overrides config)')
@click.option('--client-image', help='Client image (overrides config)')
@click.option('--dataset', help='Dataset path inside the client container')
@click.option('--model', help='Model path or name served by the server')
@click.option('--ready-timeout', type=float, help='Seconds to wait for the server readiness line')
@click.option('--client-timeout', type=float, help='Seconds the client may run')
@click.option('--docker-host', help='Remote Docker daemon')
@click.option('--no-drop-caches', is_flag=True, help='Do not drop the page cache before trials')
@click.option('--run-name', help='Human-readable name for this run')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose progress reporting')
@click.pass_context
def run_benchmark(
    ctx,
    iterations: Optional[int],
    server_image: Optional[str],
    client_image: Optional[str],
    dataset: Optional[str],
    model: Optional[str],
    ready_timeout: Optional[float],
    client_timeout: Optional[float],
    docker_host: Optional[str],
    no_drop_caches: bool,
    run_name: Optional[str],
    verbose: bool,
):
    """Run server/client trials and report serving metrics."""
    storage_manager = ctx.obj['storage_manager']

    overrides = {
        'iterations': iterations,
        'server_image': server_image,
        'client_image': client_image,
        'dataset': dataset,
        'model': model,
        'tokenizer': model,
        'ready_timeout': ready_timeout,
        'client_timeout': client_timeout,
        'docker_host': docker_host,
    }
    config_data = ctx.obj['config'].dict()
    config_data.update({k: v for k, v in overrides.items() if v is not None})
    if no_drop_caches:
        config_data['drop_caches'] = False

    try:
        config = BenchmarkConfig(**config_data)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Starting benchmark run...")
    click.echo(f"Server image: {config.server_image}")
    click.echo(f"Client image: {config.client_image}")
    click.echo(f"Model: {config.model}")
    click.echo(f"Iterations: {config.iterations}")

    core = build_core(config, storage_manager, setup_progress_callback(verbose))

    try:
        run = core.run_benchmark(run_name=run_name)
    except Exception as e:
        logger.error("Benchmark failed", error=str(e), exc_info=e)
        click.echo(f"Error running benchmark: {e}", err=True)
        sys.exit(1)

    click.echo(f"\nRun ID: {run.run_id}")
    click.echo(f"Status: {run.status.value}")

    for trial in run.trials:
        if trial.error:
            click.echo(f"  Trial {trial.index} {trial.status.value}: {trial.error_type}: {trial.error}")

    if run.reported:
        click.echo("\nReported metrics:")
        for name, _ in REPORTED_METRICS:
            if name in run.reported:
                click.echo(f"  {name}: {run.reported[name]:g}")

    if run.status == RunStatus.SKIPPED:
        return
    if run.status != RunStatus.COMPLETED or run.failed_trials:
        sys.exit(1)


@cli.command()
@click.pass_context
def list_runs(ctx):
    """List stored runs."""
    storage_manager = ctx.obj['storage_manager']

    runs = storage_manager.list_runs()
    if not runs:
        click.echo("No runs found.")
        return

    click.echo(f"Runs ({len(runs)}):")
    for run_id in runs:
        summary = storage_manager.get_run_summary(run_id)
        click.echo(f"  {run_id}:")
        click.echo(f"    Status: {summary['status']}")
        click.echo(f"    Server image: {summary['server_image']}")
        click.echo(f"    Trials: {summary['total_trials']} "
                   f"(ok {summary['ok_trials']}, failed {summary['failed_trials']}, "
                   f"skipped {summary['skipped_trials']})")
        click.echo(f"    Avg request throughput: {summary['avg_request_throughput']:.2f} req/s")
        if summary['created_at']:
            click.echo(f"    Created: {summary['created_at']}")
        click.echo()


@cli.command()
@click.argument('run_id')
@click.pass_context
def show_run(ctx, run_id: str):
    """Show detailed information about a run."""
    storage_manager = ctx.obj['storage_manager']

    try:
        summary = storage_manager.get_run_summary(run_id)
        trials = storage_manager.load_trials(run_id)
    except ValueError as e:
        click.echo(f"Error showing run: {e}", err=True)
        sys.exit(1)

    click.echo(f"Run ID: {run_id}")
    click.echo(f"Status: {summary['status']}")
    click.echo(f"Server image: {summary['server_image']}")
    click.echo(f"Trials: {summary['total_trials']}")
    click.echo(f"Avg measured time: {summary['avg_measured_seconds']:.3f}s")
    click.echo(f"Avg request throughput: {summary['avg_request_throughput']:.3f} req/s")
    click.echo(f"Avg output throughput: {summary['avg_output_throughput']:.3f} tok/s")
    if summary['created_at']:
        click.echo(f"Created: {summary['created_at']}")

    for trial in trials:
        line = f"  Trial {trial.index}: {trial.status.value} ({trial.measured_seconds:.2f}s)"
        if trial.metrics is not None:
            line += (f" requests={trial.metrics.completed}"
                     f" median_ttft_ms={trial.metrics.median_ttft_ms:g}"
                     f" median_tpot_ms={trial.metrics.median_tpot_ms:g}")
        elif trial.error:
            line += f" {trial.error_type}: {trial.error}"
        click.echo(line)


def _write_dataframe(df, output: str, format: str):
    if format == 'csv':
        df.to_csv(output, index=False)
    elif format == 'json':
        df.to_json(output, orient='records', indent=2, date_format='iso')
    elif format == 'parquet':
        df.to_parquet(output, index=False)


@cli.command()
@click.argument('run_id')
@click.option('--output', '-o', help='Output file path')
@click.option('--format', type=click.Choice(['csv', 'json', 'parquet']),
              default='csv', help='Output format')
@click.pass_context
def export_run(ctx, run_id: str, output: Optional[str], format: str):
    """Export a run's trials to a file."""
    storage_manager = ctx.obj['storage_manager']

    try:
        df = storage_manager.export_run_to_dataframe(run_id)

        if df.empty:
            click.echo(f"No data found for run {run_id}")
            return

        if not output:
            output = f"run_{run_id}.{format}"

        _write_dataframe(df, output, format)

        click.echo(f"Exported {len(df)} trials to {output}")
        click.echo(f"Columns: {', '.join(df.columns)}")

    except (ValueError, OSError, ImportError) as e:
        click.echo(f"Error exporting run: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('run_ids', nargs=-1, required=True)
@click.option('--output', '-o', help='Output file path')
@click.option('--format', type=click.Choice(['csv', 'json', 'parquet']),
              default='csv', help='Output format')
@click.pass_context
def compare_runs(ctx, run_ids: tuple, output: Optional[str], format: str):
    """Compare multiple runs in a single file."""
    storage_manager = ctx.obj['storage_manager']

    try:
        df = storage_manager.export_multiple_runs_to_dataframe(list(run_ids))

        if df.empty:
            click.echo(f"No data found for runs: {', '.join(run_ids)}")
            return

        if not output:
            output = f"comparison_{len(run_ids)}_runs.{format}"

        _write_dataframe(df, output, format)

        click.echo(f"Exported comparison of {len(run_ids)} runs to {output}")
        click.echo(f"Total trials: {len(df)}")

        ok = df[df['status'] == 'ok']
        if not ok.empty:
            run_summary = ok.groupby('run_id').agg({
                'completed': 'mean',
                'request_throughput': 'mean',
                'output_throughput': 'mean',
                'median_ttft_ms': 'mean',
                'median_tpot_ms': 'mean',
            }).round(2)
            click.echo("\nSummary by run:")
            click.echo(run_summary.to_string())

    except (ValueError, OSError, ImportError) as e:
        click.echo(f"Error comparing runs: {e}", err=True)
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
