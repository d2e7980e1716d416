"""
Result file extraction for the load-generating client.

The client (vLLM's benchmark_serving.py with --save-result) writes a single
JSON object into the trial's result directory. Its keys mirror the metrics
printed at the end of a serving benchmark run.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import BaseModel, Field, StrictFloat, StrictInt, ValidationError

from .errors import NotFound, ParseError, ReadError
from .logging import get_logger


logger = get_logger(__name__)

RESULT_SUFFIX = ".json"

RESULT_FIELDS = (
    "duration",
    "completed",
    "total_input_tokens",
    "total_output_tokens",
    "request_throughput",
    "input_throughput",
    "output_throughput",
    "mean_ttft_ms",
    "median_ttft_ms",
    "p99_ttft_ms",
    "mean_tpot_ms",
    "median_tpot_ms",
    "p99_tpot_ms",
)


class MetricsRecord(BaseModel):
    """Throughput and latency statistics reported by one client run."""

    duration: StrictFloat = Field(default=0.0, ge=0, description="Benchmark duration (seconds)")
    completed: StrictInt = Field(default=0, ge=0, description="Successfully completed requests")
    total_input_tokens: StrictInt = Field(default=0, ge=0)
    total_output_tokens: StrictInt = Field(default=0, ge=0)
    request_throughput: StrictFloat = Field(default=0.0, ge=0, description="Requests per second")
    input_throughput: StrictFloat = Field(default=0.0, ge=0, description="Input tokens per second")
    output_throughput: StrictFloat = Field(default=0.0, ge=0, description="Output tokens per second")
    mean_ttft_ms: StrictFloat = 0.0
    median_ttft_ms: StrictFloat = 0.0
    p99_ttft_ms: StrictFloat = 0.0
    mean_tpot_ms: StrictFloat = 0.0
    median_tpot_ms: StrictFloat = 0.0
    p99_tpot_ms: StrictFloat = 0.0

    class Config:
        frozen = True
        allow_inf_nan = False

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in RESULT_FIELDS}


def find_result_file(directory: Union[str, Path], suffix: str = RESULT_SUFFIX) -> Path:
    """
    Pick the result file in a directory.

    Entries are scanned in name order and the first regular file ending in
    ``suffix`` wins. The client is expected to write exactly one.

    Raises:
        ReadError: If the directory cannot be listed
        NotFound: If no entry matches
    """
    directory = Path(directory)
    try:
        with os.scandir(directory) as entries:
            names = sorted(entry.name for entry in entries if entry.is_file())
    except OSError as e:
        raise ReadError(f"failed to read directory {directory}: {e}")

    candidates = [name for name in names if name.endswith(suffix)]
    if not candidates:
        raise NotFound(f"no {suffix} file found in {directory}")

    if len(candidates) > 1:
        logger.warning(
            "Multiple result files found, using the first",
            directory=str(directory),
            candidates=candidates,
            selected=candidates[0],
        )

    return directory / candidates[0]


def _reject_constant(token: str):
    raise ValueError(f"{token} is not a valid JSON number")


def parse_metrics(data: bytes, source: str = "<memory>") -> MetricsRecord:
    """
    Parse raw result file contents into a MetricsRecord.

    Unknown keys are ignored. Missing keys fall back to zero.

    Raises:
        ParseError: On malformed JSON (including NaN and Infinity), a non-object
            document or mistyped values
    """
    try:
        payload = json.loads(data, parse_constant=_reject_constant)
    except ValueError as e:
        raise ParseError(f"failed to unmarshal {source}: {e}")

    if not isinstance(payload, dict):
        raise ParseError(f"failed to unmarshal {source}: expected a JSON object, got {type(payload).__name__}")

    missing: List[str] = [name for name in RESULT_FIELDS if name not in payload]
    if missing:
        logger.warning("Result file is missing fields, defaulting to zero", source=source, missing=missing)

    try:
        return MetricsRecord(**{name: payload[name] for name in RESULT_FIELDS if name in payload})
    except ValidationError as e:
        raise ParseError(f"failed to unmarshal {source}: {e}")


def extract_metrics(directory: Union[str, Path], suffix: str = RESULT_SUFFIX) -> MetricsRecord:
    """
    Locate, read and parse the single result file in ``directory``.

    Args:
        directory: Directory the client wrote its result into
        suffix: File name suffix identifying result files

    Returns:
        Parsed MetricsRecord

    Raises:
        NotFound, ReadError, ParseError
    """
    result_path = find_result_file(directory, suffix)

    try:
        data = result_path.read_bytes()
    except OSError as e:
        raise ReadError(f"failed to read file {result_path}: {e}")

    metrics = parse_metrics(data, source=str(result_path))
    logger.debug("Parsed result file", path=str(result_path), completed=metrics.completed)
    return metrics
