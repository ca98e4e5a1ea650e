"""Audit trail and deployment report persistence.

Each deployment has exactly one ``AuditTrail``. Entries are written under a
lock with a strictly increasing sequence number, and an entry only counts
once it has been appended to ``audit.jsonl``; a failed write raises
``AuditWriteError`` and the sequence number is not consumed.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from rollgate.core.errors import AuditWriteError, ConfigError
from rollgate.core.models import AuditEntry, DeploymentReport
from rollgate.infra.constants import DEFAULT_RELEASE


def deployment_dir(report_dir: Path, deployment_id: str) -> Path:
    return report_dir / deployment_id


class AuditTrail:
    """Totally ordered, append-only audit log for one deployment."""

    def __init__(self, deployment_id: str, path: Path | None = None) -> None:
        """Initialize the trail.

        Args:
            deployment_id: Deployment the entries belong to
            path: JSONL file to append to; None keeps entries in memory only
        """
        self.deployment_id = deployment_id
        self.path = path
        self._lock = asyncio.Lock()
        self._sequence = 0
        self._entries: list[AuditEntry] = []

    @classmethod
    def for_report_dir(
        cls, deployment_id: str, report_dir: Path, *, resume: bool = False
    ) -> AuditTrail:
        """Trail stored under ``report_dir/<deployment_id>/``.

        With ``resume=True`` an existing log is read back and new entries
        continue its sequence.
        """
        trail = cls(
            deployment_id,
            deployment_dir(report_dir, deployment_id) / DEFAULT_RELEASE.AUDIT_FILENAME,
        )
        if resume and trail.path is not None and trail.path.exists():
            trail._entries = read_audit_log(trail.path)
            if trail._entries:
                trail._sequence = trail._entries[-1].sequence
        return trail

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    async def record(
        self, actor: str, event: str, detail: dict[str, Any] | None = None
    ) -> AuditEntry:
        """Append one entry.

        Raises:
            AuditWriteError: If the entry could not be persisted
        """
        async with self._lock:
            entry = AuditEntry(
                sequence=self._sequence + 1,
                timestamp=datetime.now(UTC),
                deployment_id=self.deployment_id,
                actor=actor,
                event=event,
                detail=detail or {},
            )
            if self.path is not None:
                try:
                    await asyncio.to_thread(self._append, entry)
                except OSError as e:
                    raise AuditWriteError(
                        f"Failed to write audit entry '{event}'",
                        details=f"{self.path}: {e}",
                    ) from e
            self._sequence = entry.sequence
            self._entries.append(entry)

        logger.debug(f"[audit {self.deployment_id} #{entry.sequence}] {actor}: {event}")
        return entry

    def _append(self, entry: AuditEntry) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(entry.model_dump_json() + "\n")
            f.flush()


def read_audit_log(path: Path) -> list[AuditEntry]:
    """Read entries back from an ``audit.jsonl`` file."""
    entries: list[AuditEntry] = []
    with open(path) as f:
        for line in f:
            if line.strip():
                entries.append(AuditEntry.model_validate_json(line))
    return entries


# =============================================================================
# Report
# =============================================================================


def report_path(report_dir: Path, deployment_id: str) -> Path:
    return deployment_dir(report_dir, deployment_id) / DEFAULT_RELEASE.REPORT_FILENAME


def write_report(report: DeploymentReport, report_dir: Path) -> Path:
    """Write the deployment report atomically.

    Writes to a temporary file first and then renames it into place.
    """
    path = report_path(report_dir, report.deployment_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(".tmp")
    with open(temp_path, "w") as f:
        f.write(report.model_dump_json(indent=2))
    temp_path.replace(path)
    logger.info(f"Deployment report written to {path}")
    return path


def load_report(path: Path) -> DeploymentReport:
    """Load a stored deployment report.

    Args:
        path: Report file, or a deployment directory containing one

    Raises:
        ConfigError: If the report is missing or unreadable
    """
    if path.is_dir():
        path = path / DEFAULT_RELEASE.REPORT_FILENAME
    try:
        with open(path) as f:
            return DeploymentReport.model_validate(json.load(f))
    except FileNotFoundError as e:
        raise ConfigError(f"Deployment report not found: {path}") from e
    except (json.JSONDecodeError, ValueError) as e:
        raise ConfigError(f"Unreadable deployment report: {path}", details=str(e)) from e
