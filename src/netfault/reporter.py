"""Bounded-size digests of recorded runs."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from pathlib import Path

from netfault.models import RunStatus, SummaryEntry
from netfault.recorder import RunRecorder

DEFAULT_TAIL_LINES = 15
_BLOCK_SIZE = 8192


def tail_lines(path: Path | str, n: int) -> bytes:
    """Return the last *n* lines of *path*, byte for byte.

    Reads backwards from the end in fixed-size blocks, so the cost depends
    on *n*, not on the size of the file.  A trailing newline terminates the
    last line rather than starting an empty one.
    """
    if n <= 0:
        return b""
    with open(path, "rb") as handle:
        handle.seek(0, os.SEEK_END)
        position = handle.tell()
        data = b""
        while position > 0:
            step = min(_BLOCK_SIZE, position)
            position -= step
            handle.seek(position)
            data = handle.read(step) + data
            # n separators before the final line mean the n-th line is whole
            if data.count(b"\n", 0, len(data) - 1) >= n:
                break

    body, suffix = (data[:-1], b"\n") if data.endswith(b"\n") else (data, b"")
    return b"\n".join(body.split(b"\n")[-n:]) + suffix


class SummaryReporter:
    """Digest every run under an output root.

    :meth:`summarize` is lazy and read-only: it can be iterated any number
    of times and never modifies stored runs.
    """

    def __init__(self, root: Path | str, lines: int = DEFAULT_TAIL_LINES) -> None:
        if lines < 0:
            raise ValueError(f"lines must be non-negative, got {lines}")
        self.recorder = RunRecorder(root)
        self.lines = lines

    def summarize(self) -> Iterator[SummaryEntry]:
        """Yield one :class:`SummaryEntry` per run, in creation order.

        Runs that were never sealed, or whose log is missing, are reported
        with status ``incomplete`` instead of being skipped.  Runs sealed
        after a workload failure are reported as ``aborted`` and keep the
        tail of whatever the workload printed.
        """
        for record in self.recorder.list():
            log_path = record.log_path
            if log_path is not None and not log_path.is_file():
                log_path = None
            tail = tail_lines(log_path, self.lines) if log_path is not None else b""
            if not record.sealed or log_path is None:
                status = RunStatus.incomplete
            elif record.metadata.get("status") == RunStatus.aborted.value:
                status = RunStatus.aborted
            else:
                status = RunStatus.complete
            yield SummaryEntry(
                run_id=record.run_id,
                label=record.label,
                status=status,
                tail=tail,
                log_path=log_path,
                metadata=record.metadata,
                sealed=record.sealed,
            )

    @staticmethod
    def render(entries: Iterable[SummaryEntry]) -> Iterator[str]:
        """Format entries as text blocks, one per run."""
        for entry in entries:
            block = [f"=== Run: {entry.label} ({entry.run_id}) ==="]
            if not entry.sealed:
                block.append("  [incomplete] run was not sealed")
                if entry.log_path is None:
                    block.append("  no stress log found")
            elif entry.log_path is None:
                block.append("  [incomplete] run was sealed but its stress log is missing")
            elif entry.status == RunStatus.aborted:
                error = entry.metadata.get("error_type", "unknown error")
                block.append(f"  [aborted] workload did not finish ({error})")
            block.extend(entry.lines)
            yield "\n".join(block)


__all__ = ["DEFAULT_TAIL_LINES", "SummaryReporter", "tail_lines"]
