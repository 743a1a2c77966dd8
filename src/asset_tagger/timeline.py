"""Per-run, append-only record of stage outcomes."""

import time
from typing import Any

from loguru import logger

from asset_tagger.models import StageRecord


class RunTimeline:
    """
    Ordered stage outcomes of a single pipeline run.

    One instance is created per run and handed down to the stages that
    record into it. Entries are never removed or rewritten; the finished
    list is returned with the run result.

    Examples:
        >>> timeline = RunTimeline()
        >>> _ = timeline.record("prompt_built", "ok", length=42)
        >>> [entry.stage for entry in timeline.entries]
        ['prompt_built']

    """

    def __init__(self) -> None:
        self._entries: list[StageRecord] = []
        self._started = time.perf_counter()

    @property
    def entries(self) -> tuple[StageRecord, ...]:
        return tuple(self._entries)

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def record(
        self,
        stage: str,
        status: str,
        message: str = "",
        **details: Any,  # noqa: ANN401
    ) -> StageRecord:
        entry = StageRecord(
            stage=stage,
            status=status,  # type: ignore[arg-type]
            message=message,
            details=details,
            elapsed_ms=self.elapsed_ms,
        )
        self._entries.append(entry)
        logger.trace("timeline_entry", stage=stage, status=status, entry_message=message)
        return entry

    def as_list(self) -> list[StageRecord]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
