import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ValidationError

LOG_TYPES = ("debug", "event", "cpi", "result")
LOG_FORMAT = "%(levelname).1s, [%(asctime)s #%(process)d] [%(threadName)s] %(levelname)s -- %(message)s"


@dataclass
class TaskOutput:
    data: bytes
    start: int
    end: int
    total: int

    @property
    def partial(self) -> bool:
        return bool(self.total) and (self.start > 0 or self.end < self.total - 1)


def resolve_log_file(directory: str, log_type: Optional[str]) -> Optional[Path]:
    """Map a requested log type to the file holding it.

    ``soap`` is the historical name of the ``cpi`` log; when a task still has a
    ``soap`` file, both names return it.
    """
    kind = (log_type or "debug").strip().lower()
    if kind not in LOG_TYPES and kind != "soap":
        raise ValidationError(f"Unknown task output type '{log_type}'")
    if not directory:
        return None
    base = Path(directory)
    if kind in {"soap", "cpi"}:
        soap = base / "soap"
        if soap.exists():
            return soap
        kind = "cpi"
    return base / kind


def read_output(directory: str, log_type: Optional[str] = None, start: Optional[int] = None,
                end: Optional[int] = None, suffix: Optional[int] = None) -> TaskOutput:
    """Return the inclusive byte range ``start..end`` of a task log.

    ``suffix`` asks for the last N bytes. Ranges past the end are clamped and a
    range starting beyond the file raises ``ValidationError``.
    """
    path = resolve_log_file(directory, log_type)
    if path is None or not path.exists():
        return TaskOutput(data=b"", start=0, end=-1, total=0)
    total = path.stat().st_size
    if suffix is not None:
        start = max(total - int(suffix), 0)
        end = total - 1
    first = 0 if start is None else int(start)
    last = total - 1 if end is None else min(int(end), total - 1)
    if first < 0 or (total and first >= total) or (end is not None and int(end) < first):
        raise ValidationError(f"Invalid range {start}-{end} for output of {total} bytes")
    with path.open("rb") as handle:
        handle.seek(first)
        data = handle.read(max(last - first + 1, 0))
    return TaskOutput(data=data, start=first, end=last, total=total)


class TaskLog:
    """Per-task log sinks under ``<root>/<task id>/``."""

    def __init__(self, root: str, task_id: int):
        self.task_id = task_id
        self.directory = os.path.join(root, str(task_id))
        self._loggers: Dict[str, logging.Logger] = {}
        self._event_lock = threading.Lock()

    def open(self) -> "TaskLog":
        Path(self.directory).mkdir(parents=True, exist_ok=True)
        for kind in ("debug", "cpi"):
            self._loggers[kind] = self._build_logger(kind)
        return self

    def _build_logger(self, kind: str) -> logging.Logger:
        log = logging.getLogger(f"armada_director.task.{self.task_id}.{kind}")
        log.setLevel(logging.DEBUG)
        log.propagate = False
        for handler in list(log.handlers):
            log.removeHandler(handler)
            handler.close()
        handler = logging.FileHandler(os.path.join(self.directory, kind), encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)
        return log

    @property
    def debug(self) -> logging.Logger:
        return self._loggers.get("debug") or self._build_logger("debug")

    @property
    def cpi(self) -> logging.Logger:
        return self._loggers.get("cpi") or self._build_logger("cpi")

    def event(self, stage: str, task: str, index: int = 1, total: int = 1, state: str = "started",
              data: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "time": int(datetime.now(timezone.utc).timestamp()),
            "stage": stage,
            "task": task,
            "index": index,
            "total": total,
            "state": state,
            "progress": 100 if state in {"finished", "failed"} else 0,
        }
        if data:
            record["data"] = data
        with self._event_lock, open(os.path.join(self.directory, "event"), "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, sort_keys=True) + "\n")

    def write_result(self, text: str) -> None:
        with open(os.path.join(self.directory, "result"), "w", encoding="utf-8") as handle:
            handle.write(text or "")

    def close(self) -> None:
        for log in self._loggers.values():
            for handler in list(log.handlers):
                log.removeHandler(handler)
                handler.close()
        self._loggers = {}
