"""Local artifact store — physical persistence of generated export files."""

import os
from dataclasses import dataclass
from pathlib import Path

from ..utils.logging import get_logger

logger = get_logger("export.artifact_store")


@dataclass(frozen=True)
class ArtifactRef:
    path: str
    size_bytes: int


class LocalArtifactStore:
    """Stores artifacts as files under a single export directory.

    Writes go to a temporary sibling first and are renamed into place, so a
    reader never sees a half-written artifact.
    """

    def __init__(self, export_dir: str = "data/exports") -> None:
        self._export_dir = export_dir
        self._ensure_export_dir()

    @property
    def export_dir(self) -> str:
        return self._export_dir

    def _ensure_export_dir(self) -> None:
        """Create the export directory if it does not exist."""
        Path(self._export_dir).mkdir(parents=True, exist_ok=True)

    def write(self, filename: str, data: bytes) -> ArtifactRef:
        self._ensure_export_dir()
        final_path = os.path.join(self._export_dir, os.path.basename(filename))
        tmp_path = f"{final_path}.part"
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, final_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        size = os.path.getsize(final_path)
        logger.debug("artifact_written", path=final_path, size=size)
        return ArtifactRef(path=final_path, size_bytes=size)

    def delete(self, path: str | None) -> None:
        """Delete an artifact. A file that is already gone counts as deleted.

        Raises OSError when the file exists but cannot be removed.
        """
        if not path:
            return
        try:
            os.remove(path)
            logger.debug("artifact_deleted", path=path)
        except FileNotFoundError:
            pass

    def exists(self, path: str | None) -> bool:
        return bool(path) and os.path.isfile(path)
