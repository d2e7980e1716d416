"""
Configuration management for serving-bench.

Provides centralized configuration handling with support for:
- Configuration files (YAML/JSON)
- Environment variables
- Command-line overrides
- Validation and defaults
"""

import os
import re
import json
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Any, Union
import logging

from pydantic import BaseModel, Field, validator


logger = logging.getLogger(__name__)

ENV_PREFIX = "SERVING_BENCH_"


class BenchmarkConfig(BaseModel):
    """
    Main configuration for a serving benchmark.

    Describes the server and client containers, the readiness handshake,
    the load generator arguments and the ambient settings (storage, logging).
    """

    # Server container
    server_image: str = Field(default="benchmarks/vllm", description="Image running the inference server")
    server_cpuset: Optional[str] = Field(default="0", description="CPU set the server is pinned to")
    server_gpus: Optional[str] = Field(default="all", description="GPUs exposed to the server (None disables)")
    server_env: List[str] = Field(
        default_factory=lambda: ["PYTHONPATH=$PYTHONPATH:/vllm"],
        description="Environment for the server container",
    )
    ready_pattern: str = Field(
        default="Uvicorn running on http://0.0.0.0:8000",
        description="Regular expression signalling the server accepts requests",
    )
    ready_timeout: float = Field(default=600.0, gt=0, description="Seconds to wait for the readiness pattern")
    poll_interval: float = Field(default=1.0, gt=0, le=60.0, description="Seconds between server log polls")

    # Client container
    client_image: str = Field(default="benchmarks/vllm", description="Image running the load generator")
    client_cpuset: Optional[str] = Field(default="0", description="CPU set the client is pinned to")
    client_env: List[str] = Field(default_factory=lambda: ["PYTHONPATH=$PYTHONPATH:/vllm"])
    client_script: str = Field(default="/vllm/benchmarks/benchmark_serving.py")
    client_timeout: Optional[float] = Field(
        default=7200.0, description="Seconds the client may run before it is killed (None waits forever)"
    )
    server_alias: str = Field(default="vllmctr", description="Network alias the client reaches the server by")
    model: str = Field(default="/model")
    tokenizer: str = Field(default="/model")
    endpoint: str = Field(default="/v1/completions")
    backend: str = Field(default="openai")
    dataset: str = Field(default="/ShareGPT_V3_unfiltered_cleaned_split.json")
    result_mount: str = Field(default="/tmp", description="Client path the result directory is mounted at")
    result_suffix: str = Field(default=".json", description="Suffix of the client's result file")

    # Trial loop
    iterations: int = Field(default=1, ge=1, description="Number of trials to run")
    drop_caches: bool = Field(default=True, description="Drop the server's page cache before each trial")

    # Docker
    docker_binary: str = Field(default="docker")
    docker_host: Optional[str] = Field(default=None, description="Remote Docker daemon (None uses the local one)")

    # Storage Configuration
    storage_path: str = Field(default="./benchmark-runs", description="Path to store run data")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="structured", description="Log format: 'structured' or 'simple'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('log_format')
    def validate_log_format(cls, v):
        """Validate log format."""
        valid_formats = ['structured', 'simple']
        if v not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v

    @validator('storage_path')
    def validate_storage_path(cls, v):
        """Validate and normalize storage path."""
        path = Path(v).expanduser().resolve()
        return str(path)

    @validator('server_env', 'client_env', each_item=True)
    def validate_env_entry(cls, v):
        """Environment entries must be KEY=VALUE."""
        if "=" not in v or v.startswith("="):
            raise ValueError(f"Environment entry must look like KEY=VALUE: {v!r}")
        return v

    @validator('ready_pattern')
    def validate_ready_pattern(cls, v):
        """The readiness pattern must compile as a regular expression."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"ready_pattern is not a valid regular expression: {e}")
        return v

    @validator('result_suffix')
    def validate_result_suffix(cls, v):
        if not v:
            raise ValueError("result_suffix must not be empty")
        return v

    @validator('client_timeout')
    def validate_client_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("client_timeout must be positive or null")
        return v

    class Config:
        """Pydantic configuration."""
        extra = "forbid"  # Don't allow extra fields
        validate_assignment = True  # Validate on assignment


class ConfigManager:
    """
    Manages configuration loading from multiple sources with precedence:
    1. Command-line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Defaults (lowest priority)
    """

    # Mapping of environment variable suffixes to config field names
    ENV_MAPPINGS = {
        "SERVER_IMAGE": "server_image",
        "CLIENT_IMAGE": "client_image",
        "SERVER_CPUSET": "server_cpuset",
        "CLIENT_CPUSET": "client_cpuset",
        "READY_TIMEOUT": "ready_timeout",
        "CLIENT_TIMEOUT": "client_timeout",
        "ITERATIONS": "iterations",
        "DROP_CACHES": "drop_caches",
        "DOCKER_HOST": "docker_host",
        "DATASET": "dataset",
        "MODEL": "model",
        "STORAGE_PATH": "storage_path",
        "LOG_LEVEL": "log_level",
        "LOG_FORMAT": "log_format",
        "LOG_FILE": "log_file",
    }
    INT_FIELDS = {"iterations"}
    FLOAT_FIELDS = {"ready_timeout", "client_timeout"}
    BOOL_FIELDS = {"drop_caches"}

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = Path(config_file) if config_file else None
        self._config: Optional[BenchmarkConfig] = None

    def load_config(
        self,
        config_overrides: Optional[Dict[str, Any]] = None,
        validate: bool = True
    ) -> BenchmarkConfig:
        """
        Load configuration from all sources with proper precedence.

        Args:
            config_overrides: Dictionary of configuration overrides (highest priority)
            validate: Whether to validate the configuration

        Returns:
            BenchmarkConfig instance

        Raises:
            ValueError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        config_data = {}

        if self.config_file:
            config_data.update(self._load_config_file(self.config_file))

        config_data.update(self._load_from_environment())

        if config_overrides:
            config_data.update(config_overrides)

        try:
            self._config = BenchmarkConfig(**config_data)

            if validate:
                self._validate_config()

            logger.info("Configuration loaded successfully")
            logger.debug(f"Config: {self._config.dict()}")

            return self._config

        except Exception as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ValueError(f"Invalid configuration: {e}")

    def _load_config_file(self, config_file: Path) -> Dict[str, Any]:
        """
        Load configuration from a file (JSON or YAML).

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is unsupported or invalid
        """
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file}")

        suffix = config_file.suffix.lower()
        if suffix not in ['.yaml', '.yml', '.json']:
            raise ValueError(f"Unsupported config file format: {config_file.suffix}")

        try:
            with open(config_file, 'r') as f:
                if suffix == '.json':
                    data = json.load(f) or {}
                else:
                    data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid configuration file format: {e}")
        except OSError as e:
            raise ValueError(f"Error reading configuration file: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {config_file}")
        return data

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with 'SERVING_BENCH_' and use
        uppercase with underscores.
        """
        env_config = {}

        for suffix, config_key in self.ENV_MAPPINGS.items():
            env_var = f"{ENV_PREFIX}{suffix}"
            value = os.getenv(env_var)
            if value is None:
                continue

            if config_key in self.INT_FIELDS:
                try:
                    env_config[config_key] = int(value)
                except ValueError:
                    logger.warning(f"Invalid integer value for {env_var}: {value}")
            elif config_key in self.FLOAT_FIELDS:
                try:
                    env_config[config_key] = float(value)
                except ValueError:
                    logger.warning(f"Invalid float value for {env_var}: {value}")
            elif config_key in self.BOOL_FIELDS:
                env_config[config_key] = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                env_config[config_key] = value

        # Fall back to the standard Docker variable
        if "docker_host" not in env_config and os.getenv("DOCKER_HOST"):
            env_config["docker_host"] = os.getenv("DOCKER_HOST")

        return env_config

    def _validate_config(self):
        """
        Perform additional validation beyond Pydantic validation.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self._config:
            raise ValueError("No configuration loaded")

        storage_path = Path(self._config.storage_path)
        try:
            storage_path.mkdir(parents=True, exist_ok=True)
            test_file = storage_path / ".write_test"
            test_file.touch()
            test_file.unlink()
        except OSError as e:
            raise ValueError(f"Storage path is not writable: {storage_path} - {e}")

        if self._config.log_file:
            log_file = Path(self._config.log_file)
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                log_file.touch()
            except OSError as e:
                raise ValueError(f"Log file path is not writable: {log_file} - {e}")

    def get_config(self) -> Optional[BenchmarkConfig]:
        return self._config

    def save_config(self, output_path: Union[str, Path], format: str = "yaml"):
        """
        Save current configuration to a file.

        Args:
            output_path: Path to save configuration file
            format: Output format ('yaml' or 'json')

        Raises:
            ValueError: If no configuration is loaded or invalid format
        """
        if not self._config:
            raise ValueError("No configuration loaded to save")
        if format.lower() not in ('yaml', 'json'):
            raise ValueError(f"Unsupported format: {format}")

        output_path = Path(output_path)
        config_dict = self._config.dict()

        try:
            with open(output_path, 'w') as f:
                if format.lower() == 'yaml':
                    yaml.dump(config_dict, f, default_flow_style=False, indent=2)
                else:
                    json.dump(config_dict, f, indent=2)
        except OSError as e:
            raise ValueError(f"Error saving configuration: {e}")

        logger.info(f"Configuration saved to {output_path}")


def find_config_file() -> Optional[Path]:
    """
    Find configuration file in standard locations.

    Searches for configuration files in the following order:
    1. ./serving-bench.yaml
    2. ./serving-bench.yml
    3. ./serving-bench.json
    4. ~/.serving-bench.yaml
    5. ~/.serving-bench.yml
    6. ~/.serving-bench.json
    """
    search_paths = [
        Path("./serving-bench.yaml"),
        Path("./serving-bench.yml"),
        Path("./serving-bench.json"),
        Path("~/.serving-bench.yaml").expanduser(),
        Path("~/.serving-bench.yml").expanduser(),
        Path("~/.serving-bench.json").expanduser(),
    ]

    for path in search_paths:
        if path.exists():
            logger.info(f"Found configuration file: {path}")
            return path

    return None


def load_config_with_auto_discovery(
    config_file: Optional[Union[str, Path]] = None,
    config_overrides: Optional[Dict[str, Any]] = None
) -> BenchmarkConfig:
    """
    Load configuration with automatic file discovery.

    Args:
        config_file: Explicit config file path (overrides auto-discovery)
        config_overrides: Configuration overrides
    """
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = find_config_file()

    config_manager = ConfigManager(config_path)
    return config_manager.load_config(config_overrides)
