"""
Board report rendering and the storage collaborators of the analysis pipeline.

Persistence is out of scope for the engine; it only talks to two small
protocols. The in-memory implementations back the tests, the local directory
store backs the CLI.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

REPORT_KEY_TEMPLATE = "reports/{request_id}/final-report.md"


def report_key(request_id: str) -> str:
    return REPORT_KEY_TEMPLATE.format(request_id=request_id)


def format_final_report(
    request_id: str,
    analyses: Mapping[str, str],
    synthesis: str,
    generated_at: Optional[datetime] = None,
) -> str:
    """Render the markdown board report.

    The CEO synthesis comes first, followed by each executive analysis in
    the order given.
    """
    generated = (generated_at or datetime.now(timezone.utc)).isoformat()
    sections = [
        "# Virtual C-Suite Board Report",
        "",
        f"**Request ID:** {request_id}",
        f"**Generated:** {generated}",
        "",
        "---",
        "",
        "## CEO Strategic Synthesis",
        "",
        synthesis.strip(),
        "",
    ]
    for label, text in analyses.items():
        sections.extend(["---", "", f"## {label} Analysis", "", text.strip(), ""])
    return "\n".join(sections)


# =============================================================================
# Collaborator protocols
# =============================================================================


class ResultStore(Protocol):
    """Persists individual unit results."""

    async def record_unit_result(
        self, request_id: str, label: str, text: str, timestamp: datetime
    ) -> None: ...


class ReportStore(Protocol):
    """Object storage for rendered reports."""

    async def put_report(self, key: str, content: str) -> None: ...


class InMemoryResultStore:
    """Result store keeping records in a list."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str, str, datetime]] = []

    async def record_unit_result(
        self, request_id: str, label: str, text: str, timestamp: datetime
    ) -> None:
        self.records.append((request_id, label, text, timestamp))

    def for_request(self, request_id: str) -> Dict[str, str]:
        return {label: text for rid, label, text, _ in self.records if rid == request_id}


class InMemoryReportStore:
    """Report store keeping reports in a dict."""

    def __init__(self) -> None:
        self.reports: Dict[str, str] = {}

    async def put_report(self, key: str, content: str) -> None:
        self.reports[key] = content


class LocalDirectoryReportStore:
    """Report store writing each key as a file under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Report key escapes the report directory: {key}")
        return path

    async def put_report(self, key: str, content: str) -> None:
        path = self.path_for(key)
        await asyncio.to_thread(self._write, path, content)
        logger.info(f"Wrote report to {path}")

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
