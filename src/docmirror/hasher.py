"""Content fingerprints for source files."""

import hashlib
from pathlib import Path

from .exceptions import FileSystemError, SourceNotFoundError

CHUNK_SIZE = 65536


def compute_fingerprint(path: Path, algorithm: str = "sha256", chunk_size: int = CHUNK_SIZE) -> str:
    """
    Compute the hex digest of a file's contents, reading it in chunks.

    Args:
        path: Path to the file
        algorithm: hashlib algorithm name (default: sha256)
        chunk_size: Bytes read per iteration

    Returns:
        Hex digest of the file contents

    Raises:
        SourceNotFoundError: If the file vanished before or while it was read
        FileSystemError: If the path is a directory or cannot be read
    """
    path = Path(path)
    hasher = hashlib.new(algorithm)
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                hasher.update(chunk)
    except FileNotFoundError:
        raise SourceNotFoundError(f"File does not exist: {path}", str(path))
    except IsADirectoryError:
        raise FileSystemError(f"Cannot fingerprint a directory: {path}", str(path))
    except OSError as e:
        raise FileSystemError(f"Cannot read {path}: {e}", str(path))
    return hasher.hexdigest()
