"""Local staging of the fetched rendition."""

import base64
import time
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from loguru import logger

from asset_tagger.config import DEFAULT_TEMP_DIR


class PayloadStager:
    """Write rendition bytes to a temp file, encode them, and remove the file afterwards."""

    def __init__(self, temp_dir: Path = DEFAULT_TEMP_DIR) -> None:
        self.temp_dir = temp_dir

    def stage(self, data: bytes, asset_path: str) -> Path:
        stem = PurePosixPath(asset_path).stem or "asset"
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        target = self.temp_dir / f"{stem}_{time.time_ns() // 1_000_000}.jpeg"
        try:
            target.write_bytes(data)
        except OSError:
            # Never leave a partial file behind for cleanup to miss.
            target.unlink(missing_ok=True)
            raise
        logger.debug("payload_staged", path=str(target), size=len(data))
        return target

    def encode(self, path: Path) -> str:
        return base64.b64encode(path.read_bytes()).decode("ascii")

    def cleanup(self, paths: Iterable[Path]) -> list[str]:
        """
        Remove staged files.

        Failures are logged and returned, never raised.

        Returns:
            Error messages for the files that could not be removed.

        """
        errors: list[str] = []
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("staged_file_cleanup_failed", path=str(path), error=str(exc))
                errors.append(f"{path}: {exc}")
            else:
                logger.debug("staged_file_removed", path=str(path))
        return errors
