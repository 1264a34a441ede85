"""
Conversion gateways: the boundary to the external document converter.

The engine only relies on ConversionGateway.convert(); how the Markdown is
produced is up to the implementation.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import ConversionError, ConversionTimeoutError

logger = logging.getLogger(__name__)


class ConversionGateway(ABC):
    """Abstract converter from a source document to a Markdown file."""

    @abstractmethod
    def convert(self, source_path: Path, destination_path: Path) -> None:
        """
        Convert source_path and write Markdown to destination_path.

        Args:
            source_path: Absolute path of the source document
            destination_path: Absolute path the Markdown must be written to

        Raises:
            ConversionError: If the document could not be converted
        """
        pass


class MarkItDownGateway(ConversionGateway):
    """Runs the markitdown command line tool in a subprocess."""

    def __init__(
        self,
        command: Optional[List[str]] = None,
        timeout: float = 30.0,
        docintel_endpoint: str = "",
    ):
        """
        Args:
            command: Command prefix; source and "-o destination" are appended
            timeout: Seconds before the subprocess is killed
            docintel_endpoint: Document Intelligence endpoint passed with -d -e
        """
        self.command = list(command or ["markitdown"])
        self.timeout = timeout
        self.docintel_endpoint = docintel_endpoint

    def build_command(self, source_path: Path, destination_path: Path) -> List[str]:
        args = self.command + [str(source_path), "-o", str(destination_path)]
        if self.docintel_endpoint:
            args += ["-d", "-e", self.docintel_endpoint]
        return args

    def convert(self, source_path: Path, destination_path: Path) -> None:
        args = self.build_command(source_path, destination_path)
        logger.debug(f"Running converter: {args}")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ConversionError(
                f"Converter not found: {self.command[0]}. "
                "Install markitdown (pip install 'markitdown[all]') or set converter_command."
            )
        except subprocess.TimeoutExpired:
            raise ConversionTimeoutError(
                f"Converter timed out after {self.timeout:g} seconds: {source_path}"
            )

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise ConversionError(f"Converter exited with status {result.returncode}: {detail}")
        if not Path(destination_path).exists():
            raise ConversionError(f"Converter produced no output for {source_path}")


class CallableGateway(ConversionGateway):
    """Adapts a plain function source_path -> markdown text to the gateway interface."""

    def __init__(self, func: Callable[[Path], str]):
        self.func = func

    def convert(self, source_path: Path, destination_path: Path) -> None:
        try:
            text = self.func(Path(source_path))
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(f"{type(e).__name__}: {e}") from e
        try:
            Path(destination_path).write_text(text, encoding="utf-8")
        except OSError as e:
            raise ConversionError(f"Cannot write {destination_path}: {e}") from e
