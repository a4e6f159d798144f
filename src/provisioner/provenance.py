"""Pass provenance tracking for audit.

Every reconciliation pass is stamped with one structured record that answers:
- "What did this pass change?"
- "Which instances are still pending or failed, and why?"
- "What version of the provisioner and desired-state document was running?"
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Per-outcome instance counts for one pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def total_significant(self) -> int:
        """Total remote mutations (create + update + delete)."""
        return self.created + self.updated + self.deleted


@dataclass
class PassProvenance:
    """Provenance record for one reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    provisioner_version: str = PROVISIONER_VERSION
    git_commit_sha: str = ""
    spec_file_hash: str = ""

    mode: str = "apply"
    pass_number: int = 0
    converged: bool = False
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: Path) -> str:
    """SHA256 of a file's content, empty if it cannot be read."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self, mode: str, pass_number: int, spec_file_hash: str = ""
    ) -> PassProvenance:
        return PassProvenance(
            git_commit_sha=self._git_commit_sha,
            spec_file_hash=spec_file_hash,
            mode=mode,
            pass_number=pass_number,
        )

    def log_provenance(self, provenance: PassProvenance) -> None:
        """Log a completed provenance record.

        Failed instances raise the level to ERROR, pending ones to WARNING.
        """
        summary = provenance.change_summary
        log_level = logging.INFO
        if summary.failed:
            log_level = logging.ERROR
        elif summary.pending:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation pass provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "mode": provenance.mode,
                "pass_number": provenance.pass_number,
                "converged": provenance.converged,
                "changes_applied": summary.total_significant,
                "pending": summary.pending,
                "failed": summary.failed,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: PassProvenance,
        instance_key: str,
        resource_id: str,
        change_type: str,
        changed_fields: list[str] | None = None,
    ) -> None:
        """Log one instance change. Attribute values are never logged."""
        logger.info(
            "Resource change",
            extra={
                "pass_number": provenance.pass_number,
                "git_commit": provenance.git_commit_sha,
                "instance": instance_key,
                "resource_id": resource_id,
                "change_type": change_type,
                "changed_fields": changed_fields or [],
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
