"""
Storage management for benchmark runs and their trials.

Layout::

    <storage_path>/<run_id>/run.json      run metadata and configuration
    <storage_path>/<run_id>/trials.jsonl  one line per finished trial
    <storage_path>/<run_id>/logs/         container log artifacts
"""

import json
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any

import pandas as pd

from .logging import tail_output
from .models import TrialResult, TrialStatus
from .results import RESULT_FIELDS, MetricsRecord


TRIAL_COLUMNS = [
    'run_id', 'trial', 'status', 'started_at', 'finished_at',
    'measured_seconds', 'error_type', 'error',
] + list(RESULT_FIELDS)


def make_path_safe(name: str, max_length: int = 30) -> str:
    """Convert name to filesystem-safe string."""
    if not name:
        return "unnamed"

    safe_name = re.sub(r'[^\w\s-]', '', name.lower())
    safe_name = re.sub(r'[\s_]+', '-', safe_name)
    safe_name = safe_name.strip('-')

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('-')

    return safe_name or "unnamed"


def generate_timestamp() -> str:
    """Generate compact timestamp: YYYYMMDD-HHMMSS."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def generate_short_uuid(length: int = 4) -> str:
    """Generate short UUID suffix."""
    return uuid.uuid4().hex[:length]


def create_folder_name(human_name: str) -> str:
    """Create folder name: name_timestamp_uuid."""
    return f"{make_path_safe(human_name)}_{generate_timestamp()}_{generate_short_uuid()}"


class StorageManager:
    """Persists runs, their trials and log artifacts on the filesystem."""

    def __init__(self, storage_path: str = "./benchmark-runs"):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)

    def create_run(self, config: Dict[str, Any], run_name: Optional[str] = None) -> str:
        """Create a run folder, save its configuration and return the folder name as ID."""
        if not run_name:
            image = str(config.get('server_image') or "run")
            run_name = image.rsplit('/', 1)[-1].split(':')[0]

        run_id = create_folder_name(run_name)
        run_path = self.storage_path / run_id
        (run_path / "logs").mkdir(parents=True, exist_ok=True)

        self._write_metadata(run_id, {
            'id': run_id,
            'name': run_name,
            'created_at': datetime.now().isoformat(),
            'status': 'running',
            'config': config,
        })
        (run_path / "trials.jsonl").touch()

        return run_id

    def run_path(self, run_id: str) -> Path:
        run_path = self.storage_path / run_id
        if not (run_path / "run.json").exists():
            raise ValueError(f"Run {run_id} not found")
        return run_path

    def logs_path(self, run_id: str) -> Path:
        path = self.run_path(run_id) / "logs"
        path.mkdir(exist_ok=True)
        return path

    def get_run_metadata(self, run_id: str) -> Optional[Dict[str, Any]]:
        metadata_path = self.storage_path / run_id / "run.json"
        if not metadata_path.exists():
            return None
        with open(metadata_path, 'r') as f:
            return json.load(f)

    def get_run_config(self, run_id: str) -> Optional[Dict[str, Any]]:
        metadata = self.get_run_metadata(run_id)
        return metadata.get('config') if metadata else None

    def update_run_status(self, run_id: str, status: str, reported: Optional[Dict[str, float]] = None):
        """Record the final status of a run and the metrics it last reported."""
        metadata = self.get_run_metadata(run_id)
        if metadata is None:
            raise ValueError(f"Run {run_id} not found")
        metadata['status'] = status
        metadata['finished_at'] = datetime.now().isoformat()
        if reported is not None:
            metadata['reported'] = reported
        self._write_metadata(run_id, metadata)

    def save_trial(self, run_id: str, trial: TrialResult):
        """Append a finished trial to the run's trial log."""
        trials_path = self.run_path(run_id) / "trials.jsonl"

        trial_data = {
            'trial': trial.index,
            'status': trial.status.value,
            'started_at': trial.started_at.isoformat(),
            'finished_at': trial.finished_at.isoformat() if trial.finished_at else None,
            'measured_seconds': trial.measured_seconds,
            'metrics': trial.metrics.to_dict() if trial.metrics is not None else None,
            'reported': trial.reported,
            'error_type': trial.error_type,
            'error': trial.error,
            'output': tail_output(trial.output),
        }

        with open(trials_path, 'a') as f:
            f.write(json.dumps(trial_data) + '\n')

    def load_trials(self, run_id: str) -> List[TrialResult]:
        """Load all trials recorded for a run."""
        trials_path = self.run_path(run_id) / "trials.jsonl"
        if not trials_path.exists():
            return []

        trials = []
        with open(trials_path, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                data = json.loads(line)
                metrics = data.get('metrics')
                trials.append(TrialResult(
                    index=data['trial'],
                    status=TrialStatus(data['status']),
                    started_at=datetime.fromisoformat(data['started_at']),
                    finished_at=datetime.fromisoformat(data['finished_at']) if data.get('finished_at') else None,
                    measured_seconds=data.get('measured_seconds', 0.0),
                    metrics=MetricsRecord(**metrics) if metrics else None,
                    reported=data.get('reported', {}),
                    error_type=data.get('error_type'),
                    error=data.get('error'),
                    output=data.get('output', ""),
                ))

        return trials

    def list_runs(self) -> List[str]:
        """List all run IDs, oldest first."""
        runs = [
            path.name for path in self.storage_path.iterdir()
            if path.is_dir() and (path / "run.json").exists()
        ]
        return sorted(runs, key=lambda run_id: (self.get_run_metadata(run_id) or {}).get('created_at', ''))

    def export_run_to_dataframe(self, run_id: str) -> pd.DataFrame:
        """Export a run's trials to a DataFrame, one row per trial."""
        trials = self.load_trials(run_id)
        if not trials:
            return pd.DataFrame(columns=TRIAL_COLUMNS)

        data = []
        for trial in trials:
            row = {
                'run_id': run_id,
                'trial': trial.index,
                'status': trial.status.value,
                'started_at': trial.started_at,
                'finished_at': trial.finished_at,
                'measured_seconds': trial.measured_seconds,
                'error_type': trial.error_type,
                'error': trial.error,
            }
            metrics = trial.metrics.to_dict() if trial.metrics is not None else {}
            for name in RESULT_FIELDS:
                row[name] = metrics.get(name)
            data.append(row)

        return pd.DataFrame(data, columns=TRIAL_COLUMNS)

    def export_multiple_runs_to_dataframe(self, run_ids: List[str]) -> pd.DataFrame:
        """Export multiple runs to a single DataFrame for comparison."""
        all_dataframes = []
        for run_id in run_ids:
            df = self.export_run_to_dataframe(run_id)
            if not df.empty:
                all_dataframes.append(df)

        if not all_dataframes:
            return pd.DataFrame(columns=TRIAL_COLUMNS)

        combined_df = pd.concat(all_dataframes, ignore_index=True)
        return combined_df.sort_values(['run_id', 'trial']).reset_index(drop=True)

    def get_run_summary(self, run_id: str) -> Dict[str, Any]:
        """Get summary statistics for a run."""
        metadata = self.get_run_metadata(run_id)
        if metadata is None:
            raise ValueError(f"Run {run_id} not found")
        trials = self.load_trials(run_id)
        config = metadata.get('config') or {}

        summary = {
            'run_id': run_id,
            'name': metadata.get('name'),
            'status': metadata.get('status'),
            'created_at': metadata.get('created_at'),
            'server_image': config.get('server_image', ''),
            'total_trials': len(trials),
            'ok_trials': sum(1 for t in trials if t.status == TrialStatus.OK),
            'failed_trials': sum(1 for t in trials if t.status in (TrialStatus.ERROR, TrialStatus.FATAL)),
            'skipped_trials': sum(1 for t in trials if t.status == TrialStatus.SKIPPED),
            'reported': metadata.get('reported', {}),
        }

        measured = [t for t in trials if t.metrics is not None]
        if measured:
            summary['avg_measured_seconds'] = round(sum(t.measured_seconds for t in measured) / len(measured), 3)
            summary['avg_request_throughput'] = round(
                sum(t.metrics.request_throughput for t in measured) / len(measured), 3
            )
            summary['avg_output_throughput'] = round(
                sum(t.metrics.output_throughput for t in measured) / len(measured), 3
            )
        else:
            summary['avg_measured_seconds'] = 0.0
            summary['avg_request_throughput'] = 0.0
            summary['avg_output_throughput'] = 0.0

        return summary

    def _write_metadata(self, run_id: str, metadata: Dict[str, Any]):
        metadata_path = self.storage_path / run_id / "run.json"
        with open(metadata_path, 'w') as f:
            json.dump(metadata, f, indent=2, default=str)
