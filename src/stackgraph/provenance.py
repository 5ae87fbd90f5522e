"""Run provenance tracking and run summaries.

Every run is stamped with a provenance record answering:
- "What did this run do, to which nodes, and with what outcome?"
- "Which version of the engine and of the stack file ran?"

DESIGN PHILOSOPHY:
- One structured record per run, logged as JSON for queryability
- Per-node rows (action, status, error kind and message)
- Git commit SHA and stack file hash when available
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .executor import ExecutionReport
from .nodes import NodeStatus
from .plan import Plan

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("STACKGRAPH_VERSION", "dev")


@dataclass
class NodeRow:
    """One line of the run summary."""

    node_id: str
    kind: str
    action: str
    status: str
    error_type: str | None = None
    error: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0


@dataclass
class ChangeSummary:
    """Counts of planned actions."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_change_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total significant changes (everything but no-ops)."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count


@dataclass
class RunProvenance:
    """Complete provenance record for a run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    command: str = ""
    stack: str = ""
    engine_version: str = ENGINE_VERSION

    # Source of truth
    git_commit_sha: str = ""
    declaration_file: str = ""
    declaration_file_hash: str = ""

    # Outcome
    dry_run: bool = False
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    nodes: list[NodeRow] = field(default_factory=list)
    state_serial: int = 0
    cancelled: bool = False

    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    @property
    def failed(self) -> list[str]:
        return [row.node_id for row in self.nodes if row.status == NodeStatus.FAILED.value]

    @property
    def blocked(self) -> list[str]:
        return [row.node_id for row in self.nodes if row.status == NodeStatus.BLOCKED.value]

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed and not self.blocked

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result

    def record_plan(self, plan: Plan) -> None:
        counts = plan.counts()
        self.change_summary = ChangeSummary(
            create_count=counts["create"],
            update_count=counts["update"],
            replace_count=counts["replace"],
            delete_count=counts["delete"],
            no_change_count=counts["noop"],
        )
        self.nodes = []
        for node_id in [*plan.apply_order(), *plan.delete_order()]:
            change = plan.changes[node_id]
            self.nodes.append(
                NodeRow(node_id, change.kind, change.action.value, NodeStatus.PLANNED.value)
            )

    def record_execution(self, plan: Plan, report: ExecutionReport) -> None:
        self.cancelled = report.cancelled
        self.nodes = []
        for node_id in [*plan.apply_order(), *plan.delete_order()]:
            result = report.results.get(node_id)
            change = plan.changes[node_id]
            if result is None:
                self.nodes.append(
                    NodeRow(node_id, change.kind, change.action.value, NodeStatus.PLANNED.value)
                )
                continue
            self.nodes.append(
                NodeRow(
                    node_id=node_id,
                    kind=result.kind,
                    action=result.action.value,
                    status=result.status.value,
                    error_type=type(result.error).__name__ if result.error else None,
                    error=str(result.error) if result.error else None,
                    attempts=result.attempts,
                    duration_seconds=round(result.duration_seconds, 3),
                )
            )


def hash_file(path: Path) -> str:
    """SHA256 of a file's content, empty if unreadable."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


def create_provenance(command: str, declaration_file: Path | None, dry_run: bool) -> RunProvenance:
    return RunProvenance(
        command=command,
        git_commit_sha=os.environ.get("GIT_COMMIT_SHA", ""),
        declaration_file=str(declaration_file) if declaration_file else "",
        declaration_file_hash=hash_file(declaration_file) if declaration_file else "",
        dry_run=dry_run,
    )


def log_provenance(provenance: RunProvenance) -> None:
    """Log a completed provenance record.

    The structured data enables queries like:
    - "Show every run that replaced a key vault"
    - "Which commit introduced this failure?"
    """
    log_level = logging.INFO
    if provenance.error:
        log_level = logging.ERROR
    elif provenance.failed or provenance.blocked:
        log_level = logging.WARNING

    logger.log(
        log_level,
        "Run provenance",
        extra={
            "provenance": provenance.to_dict(),
            # Flatten key fields for easier querying
            "stack": provenance.stack,
            "command": provenance.command,
            "changes": provenance.change_summary.total_significant,
            "failed": provenance.failed,
            "blocked": provenance.blocked,
            "git_commit": provenance.git_commit_sha,
            "duration_seconds": provenance.duration_seconds,
        },
    )


def format_summary(provenance: RunProvenance) -> str:
    """Human-readable per-node status table."""
    headers = ("NODE", "KIND", "ACTION", "STATUS", "DETAIL")
    rows = [
        (
            row.node_id,
            row.kind,
            row.action,
            row.status,
            f"{row.error_type}: {row.error}" if row.error else "",
        )
        for row in provenance.nodes
    ]
    widths = [
        max([len(headers[i]), *(len(r[i]) for r in rows)]) for i in range(len(headers) - 1)
    ]

    def line(cells: tuple[str, ...]) -> str:
        fixed = "  ".join(cell.ljust(width) for cell, width in zip(cells, widths, strict=False))
        return f"{fixed}  {cells[-1]}".rstrip()

    summary = provenance.change_summary
    lines = [line(headers), *(line(r) for r in rows), ""]
    lines.append(
        f"{summary.create_count} to create, {summary.update_count} to update, "
        f"{summary.replace_count} to replace, {summary.delete_count} to delete, "
        f"{summary.no_change_count} unchanged"
    )
    if provenance.failed:
        lines.append(f"Failed: {', '.join(provenance.failed)}")
    if provenance.blocked:
        lines.append(f"Blocked: {', '.join(provenance.blocked)}")
    if provenance.error:
        lines.append(f"Error: {provenance.error_type}: {provenance.error}")
    return "\n".join(lines)
