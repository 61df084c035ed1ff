"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO

from .http import RequestMetrics

CANDIDATE_FIELDS = [
    "rank",
    "id",
    "lat",
    "lng",
    "cell",
    "resolution",
    "region",
    "city",
    "score",
    "confidence",
    "completeness",
    "is_white_space",
    "in_gap_zone",
    "population",
    "anchor_count",
    "nearest_store_km",
    "peer_performance",
    "nearby_turnover",
    "saturation",
    "urban_density",
    "landuse",
    "area_class",
    "estimated_factors",
    "flags",
    "rationale_source",
    "rationale",
]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def write_candidates_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    rows = list(rows)
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CANDIDATE_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            out = dict(row)
            out["estimated_factors"] = json.dumps(out.get("estimated_factors", []), ensure_ascii=False)
            out["flags"] = json.dumps(out.get("flags", []), ensure_ascii=False)
            writer.writerow(out)


def write_json_object(path: str, payload: Any) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines) + "\n")


class ProgressReporter:
    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 50,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(1, int(log_every)) if log_every else 0
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        self.stage = "init"
        self.processed_count = 0
        self.total_estimate: Optional[int] = None
        self._next_log = self.log_every if self.log_every else 0
        self._last_write = 0.0

    def set_stage(self, stage: str, total_estimate: Optional[int] = None) -> None:
        self.stage = stage
        self.processed_count = 0
        self.total_estimate = total_estimate
        self._next_log = self.log_every if self.log_every else 0
        self._write_if_due(force=True)

    def advance(self, count: int = 1) -> None:
        if count <= 0:
            return
        self.processed_count += count
        if self.log_every and self.processed_count >= self._next_log:
            network = self._network_counts()
            if self.total_estimate is None:
                self.logger.info(
                    "Progress: stage=%s processed=%s land_requests=%s urban_requests=%s",
                    self.stage,
                    self.processed_count,
                    network.get("land", 0),
                    network.get("urban", 0),
                )
            else:
                self.logger.info(
                    "Progress: stage=%s processed=%s/%s land_requests=%s urban_requests=%s",
                    self.stage,
                    self.processed_count,
                    self.total_estimate,
                    network.get("land", 0),
                    network.get("urban", 0),
                )
            self._next_log += self.log_every
        self._write_if_due()

    def flush(self) -> None:
        self._write_if_due(force=True)

    def _network_counts(self) -> Dict[str, int]:
        if self.metrics is None:
            return {}
        return dict(self.metrics.network)

    def _write_if_due(self, force: bool = False) -> None:
        if not self.output_path:
            return
        now = time.monotonic()
        if not force and (now - self._last_write) < self.write_interval_seconds:
            return
        payload = {
            "stage": self.stage,
            "processed_count": self.processed_count,
            "total_estimate": self.total_estimate,
            "requests": self._network_counts(),
            "timestamp": utc_now_iso(),
        }
        with atomic_writer(self.output_path, mode="w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        self._last_write = now
