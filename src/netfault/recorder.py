"""Per-run storage: one directory per scenario run under the output root.

Layout::

    outputs/
        20261019_142501_baseline/
            .created
            baseline_cassandra-stress.log
            metadata.txt
        20261019_142501_baseline.1/      <- same label, same second
            ...

``metadata.txt`` is written last; its presence marks the run as sealed.
``.created`` holds the wall-clock nanosecond at which the directory was
claimed and orders runs that share a timestamp second.  Timestamps in run
ids are local time, like ``date +%Y%m%d_%H%M%S``.
"""

from __future__ import annotations

import os
import re
import stat
import tempfile
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

from netfault.core import RecorderWriteError
from netfault.logging import get_logger
from netfault.models import RunRecord, Scenario

logger = get_logger(__name__)

METADATA_FILE = "metadata.txt"
CREATED_FILE = ".created"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
_RUN_DIR_RE = re.compile(
    r"^(?P<timestamp>\d{8}_\d{6})_(?P<label>[A-Za-z0-9][A-Za-z0-9_-]*)(?:\.(?P<seq>\d+))?$"
)
_READ_ONLY = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH


def parse_run_dir_name(name: str) -> tuple[datetime, str, int] | None:
    """Split a run directory name into ``(timestamp, label, collision counter)``.

    Returns None for names that are not run directories.
    """
    match = _RUN_DIR_RE.match(name)
    if match is None:
        return None
    timestamp = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
    return timestamp, match.group("label"), int(match.group("seq") or 0)


def log_file_name(label: str, tool: str) -> str:
    return f"{label}_{tool}.log"


def read_metadata(path: Path) -> dict[str, str]:
    """Parse ``key=value`` lines; lines without ``=`` are ignored."""
    metadata: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            metadata[key.strip()] = value.strip()
    return metadata


def _created_ns(run_dir: Path) -> int:
    """Creation stamp of *run_dir*; directories without a marker fall back to mtime."""
    try:
        return int((run_dir / CREATED_FILE).read_text(encoding="ascii").strip())
    except (OSError, ValueError):
        return run_dir.stat().st_mtime_ns


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, _READ_ONLY)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RunRecorder:
    """Allocate run directories and persist captured output atomically."""

    def __init__(
        self,
        root: Path | str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.root = Path(root)
        self._clock = clock or (lambda: datetime.now().astimezone())
        # next collision counter to try, per base id
        self._next_seq: dict[str, int] = {}
        self._last_created_ns = 0

    def begin(self, scenario: Scenario) -> RunRecord:
        """Claim a fresh run directory for *scenario*.

        The identifier is ``<timestamp>_<label>``; if that directory already
        exists a ``.<n>`` suffix is appended.  ``mkdir`` is the claim, so two
        recorders sharing a root cannot hand out the same id.

        Raises:
            RecorderWriteError: the directory could not be created.
        """
        started_at = self._clock()
        base = f"{started_at.strftime(TIMESTAMP_FORMAT)}_{scenario.label}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            seq = self._next_seq.get(base, 0)
            while True:
                run_id = base if seq == 0 else f"{base}.{seq}"
                path = self.root / run_id
                try:
                    path.mkdir()
                    self._next_seq[base] = seq + 1
                    break
                except FileExistsError:
                    seq += 1
            created_ns = max(time.time_ns(), self._last_created_ns + 1)
            self._last_created_ns = created_ns
            (path / CREATED_FILE).write_text(f"{created_ns}\n", encoding="ascii")
        except OSError as exc:
            raise RecorderWriteError(f"cannot create run directory under {self.root}: {exc}") from exc

        logger.debug("Allocated run directory %s", path)
        return RunRecord(
            run_id=run_id,
            label=scenario.label,
            scenario=scenario,
            started_at=started_at,
            path=path,
        )

    def seal(
        self,
        record: RunRecord,
        output: bytes,
        metadata: Mapping[str, object] | None = None,
    ) -> RunRecord:
        """Write the captured *output* and the run metadata, then seal *record*.

        Returns a sealed copy of *record*; the original is left untouched.

        Raises:
            RecorderWriteError: the record is already sealed or a write failed.
        """
        if record.sealed or (record.path / METADATA_FILE).exists():
            raise RecorderWriteError(f"run {record.run_id} is already sealed")

        tool = record.scenario.workload.tool if record.scenario else "workload"
        log_path = record.path / log_file_name(record.label, tool)
        fields = self._base_metadata(record)
        for key, value in (metadata or {}).items():
            fields[str(key)] = str(value)
        body = "".join(f"{key}={value}\n" for key, value in fields.items())

        try:
            _atomic_write(log_path, output)
            _atomic_write(record.path / METADATA_FILE, body.encode("utf-8"))
        except OSError as exc:
            raise RecorderWriteError(f"cannot seal run {record.run_id}: {exc}") from exc

        logger.info("Sealed run %s (%d bytes of output)", record.run_id, len(output))
        return record.model_copy(update={"log_path": log_path, "metadata": fields, "sealed": True})

    def list(self) -> list[RunRecord]:
        """Return every run under the root in creation order.

        Reads only; missing roots yield an empty list.
        """
        if not self.root.is_dir():
            return []
        keyed = []
        for entry in self.root.iterdir():
            parsed = parse_run_dir_name(entry.name)
            if parsed is None or not entry.is_dir():
                continue
            timestamp, _, seq = parsed
            keyed.append(((timestamp, _created_ns(entry), seq, entry.name), entry))
        keyed.sort(key=lambda item: item[0])
        return [self.load(entry) for _, entry in keyed]

    def load(self, run_dir: Path | str) -> RunRecord:
        """Rebuild a :class:`RunRecord` from a run directory.

        Raises:
            ValueError: *run_dir* is not named like a run directory.
        """
        path = Path(run_dir)
        if not path.is_absolute() and not path.exists():
            path = self.root / path
        parsed = parse_run_dir_name(path.name)
        if parsed is None:
            raise ValueError(f"not a run directory: {path.name}")
        timestamp, label, _ = parsed

        metadata_path = path / METADATA_FILE
        sealed = metadata_path.is_file()
        metadata = read_metadata(metadata_path) if sealed else {}
        logs = sorted(path.glob(f"{label}_*.log"))
        return RunRecord(
            run_id=path.name,
            label=label,
            started_at=timestamp.astimezone(),
            path=path,
            log_path=logs[0] if logs else None,
            metadata=metadata,
            sealed=sealed,
        )

    @staticmethod
    def _base_metadata(record: RunRecord) -> dict[str, str]:
        fields = {"timestamp": record.started_at.isoformat()}
        scenario = record.scenario
        if scenario is not None:
            fields = {
                "mode": scenario.fault.kind.value,
                "value": scenario.fault.magnitude,
                "duration": str(scenario.duration_seconds),
                "targets": " ".join(scenario.fault.target_names),
                "workload": scenario.workload.mode.value,
                **fields,
            }
        return fields


__all__ = ["CREATED_FILE", "METADATA_FILE", "RunRecorder", "log_file_name", "parse_run_dir_name", "read_metadata"]
