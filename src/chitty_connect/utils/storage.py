"""Local file storage for generated exports."""

import logging
from pathlib import Path

logger = logging.getLogger("chitty-connect.utils.storage")


class LocalFileStore:
    """Stores export files under a root directory, keyed by relative path."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Storage key escapes the export root: {key}")
        return path

    def put(self, key: str, body: bytes, content_type: str = "application/pdf") -> Path:
        """Write ``body`` under ``key``.

        Raises:
            ValueError: If the key points outside the storage root
            OSError: If the file cannot be written
        """
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(body)
        logger.info(f"Stored {len(body)} bytes ({content_type}) at {key}")
        return path

    def locate(self, key: str) -> Path | None:
        """Return the file stored under ``key`` or None if there is none."""
        try:
            path = self._path_for(key)
        except ValueError:
            return None
        return path if path.is_file() else None
