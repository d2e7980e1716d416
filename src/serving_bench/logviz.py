"""
Post-hoc capture of container logs as run artifacts.
"""

from pathlib import Path
from typing import Union

from .logging import get_logger
from .models import Container


logger = get_logger(__name__)


class ContainerLogArchiver:
    """
    Writes a container's logs into a directory, one file per container.

    ``runtime`` only needs a ``logs(container) -> str`` method. Callers are
    expected to treat failures here as non-fatal.
    """

    def __init__(self, runtime, output_dir: Union[str, Path]):
        self.runtime = runtime
        self.output_dir = Path(output_dir)

    def visualize(self, container: Container) -> Path:
        output = self.runtime.logs(container)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        artifact = self.output_dir / f"{container.name}.log"
        artifact.write_text(output, encoding="utf-8")
        logger.info("Container logs archived", container=container.name, path=str(artifact), size=len(output))
        return artifact
