"""
Logging and Stage Timing

Structured JSON log formatting and per-stage timing records used by the
daemon cycle, the reconciliation run and the boundary refresh.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    EXTRA_FIELDS = ('operation', 'duration_ms', 'run_id', 'stage', 'rows')

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


@dataclass
class StageTiming:
    """Duration of one named processing stage."""
    stage: str
    started_at: datetime
    duration_ms: float
    success: bool = True
    rows: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        return data


class StageTimer:
    """Collects timing records for the stages of one run."""

    def __init__(self, run_id: Optional[str] = None, log: Optional[logging.Logger] = None):
        self.run_id = run_id
        self.timings: List[StageTiming] = []
        self._logger = log or logger

    @contextmanager
    def stage(self, name: str, rows: Optional[int] = None) -> Iterator[StageTiming]:
        """
        Time the enclosed block and log it as a stage.

        The yielded record may be updated inside the block (e.g. `rows`).
        Failures are recorded and re-raised.
        """
        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()
        timing = StageTiming(stage=name, started_at=started_at, duration_ms=0.0, rows=rows)
        try:
            yield timing
        except BaseException:
            timing.success = False
            raise
        finally:
            timing.duration_ms = round((time.perf_counter() - start) * 1000, 3)
            self.timings.append(timing)
            self._logger.info(
                f"[TIMING] Stage: {name} - Duration: {timing.duration_ms:.0f}ms",
                extra={
                    'operation': 'stage',
                    'stage': name,
                    'duration_ms': timing.duration_ms,
                    'run_id': self.run_id,
                    'rows': timing.rows,
                }
            )

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [timing.to_dict() for timing in self.timings]


def setup_logging(verbose: bool = False, json_logs: bool = False,
                  log_file: Optional[str] = None) -> None:
    """Setup root logging for command line use."""
    level = logging.DEBUG if verbose else logging.INFO
    if json_logs:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
