# bulbul/assets.py
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import StorageIO

logger = logging.getLogger(__name__)


class AssetStorage(ABC):
    """Blob store the content store keeps post images in."""

    @abstractmethod
    def save(self, data: bytes, name: str) -> str:
        """Store ``data`` under ``name`` and return its public locator.

        Raises ``StorageIO`` when the write cannot complete.
        """

    @abstractmethod
    def remove(self, name: str) -> None:
        """Best-effort removal. Never raises."""


class LocalAssetStorage(AssetStorage):
    def __init__(self, directory, url_prefix: str = "/uploads"):
        self.directory = Path(directory)
        self.url_prefix = url_prefix.rstrip("/")

    def _path_for(self, name: str) -> Path:
        path = (self.directory / name).resolve()
        if path.parent != self.directory.resolve():
            raise StorageIO(f"Refusing asset name outside uploads directory: {name!r}")
        return path

    def save(self, data: bytes, name: str) -> str:
        path = self._path_for(name)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageIO(f"Could not write asset {name}: {exc}") from exc
        logger.debug("Saved asset %s (%d bytes)", name, len(data))
        return f"{self.url_prefix}/{name}"

    def remove(self, name: str) -> None:
        try:
            self._path_for(name).unlink()
        except FileNotFoundError:
            logger.debug("Asset %s already gone", name)
        except (OSError, StorageIO) as exc:
            logger.warning("Could not delete image %s: %s", name, exc)
