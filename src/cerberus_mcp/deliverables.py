"""Deliverable files and exploitation queue files produced by agents."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .context import RunContext
from .errors import CerberusError

VULN_TYPES: tuple[str, ...] = ("injection", "xss", "auth", "authz", "ssrf")

_VULN_ID_PATTERN = re.compile(r"^(XSS|AUTH|AUTHZ|INJECTION|SSRF)-VULN-(\d+)$")
_SAFE_FILENAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

logger = logging.getLogger(__name__)


class DeliverableError(CerberusError):
    """Raised for malformed deliverable names, queue files or vulnerability ids."""


@dataclass(slots=True, frozen=True)
class VulnerabilitySummary:
    id: str
    type: str
    vulnerability_type: str
    source: str
    confidence: str
    verdict: str


def save_deliverable(context: RunContext, filename: str, content: str, *, root: Path | None = None) -> Path:
    """Atomically write ``content`` to the run's deliverables directory."""

    if not _SAFE_FILENAME.match(filename):
        raise DeliverableError(f"Invalid deliverable filename: {filename!r}")
    directory = context.deliverables_dir(root)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / filename
    fd, tmp_name = tempfile.mkstemp(prefix=f".{filename}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
    return target


def parse_vuln_id(vuln_id: str) -> tuple[str, str]:
    """Split ``XSS-VULN-01`` into ``("xss", "XSS-VULN-01")``."""

    normalized = vuln_id.strip().upper()
    match = _VULN_ID_PATTERN.match(normalized)
    if not match:
        raise DeliverableError(
            f"Invalid vulnerability ID format: {vuln_id}. "
            "Expected TYPE-VULN-NN (e.g., XSS-VULN-01, AUTH-VULN-03)"
        )
    return match.group(1).lower(), normalized


def queue_file_path(vuln_type: str, deliverables_dir: Path) -> Path:
    normalized = vuln_type.strip().lower()
    if normalized not in VULN_TYPES:
        raise DeliverableError(
            f"Unknown vulnerability type: {vuln_type}. Valid types: {', '.join(VULN_TYPES)}"
        )
    return Path(deliverables_dir) / f"{normalized}_exploitation_queue.json"


def load_queue(path: Path) -> list[dict[str, Any]]:
    """Return the ``vulnerabilities`` list of a queue file."""

    if not path.exists():
        raise DeliverableError(f"Queue file not found: {path}. Run vulnerability analysis first.")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise DeliverableError(f"Queue file {path} is not valid JSON: {exc}") from exc
    vulnerabilities = document.get("vulnerabilities") if isinstance(document, dict) else None
    if not isinstance(vulnerabilities, list):
        raise DeliverableError(f"Invalid queue file format: {path} (missing 'vulnerabilities' list)")
    for index, entry in enumerate(vulnerabilities):
        if not isinstance(entry, dict):
            raise DeliverableError(f"Queue entry {index} in {path} is not an object")
    return vulnerabilities


def find_vulnerability(vuln_id: str, deliverables_dir: Path) -> dict[str, Any]:
    vuln_type, normalized = parse_vuln_id(vuln_id)
    path = queue_file_path(vuln_type, deliverables_dir)
    vulnerabilities = load_queue(path)
    for entry in vulnerabilities:
        if entry.get("ID") == normalized:
            return {**entry, "_queue_path": str(path), "_type": vuln_type}
    available = ", ".join(str(entry.get("ID")) for entry in vulnerabilities) or "none"
    raise DeliverableError(f"Vulnerability {normalized} not found in queue. Available IDs: {available}")


def list_vulnerabilities(deliverables_dir: Path) -> list[VulnerabilitySummary]:
    """Summaries across every readable queue file; unreadable queues are skipped."""

    summaries: list[VulnerabilitySummary] = []
    if not Path(deliverables_dir).exists():
        return summaries
    for vuln_type in VULN_TYPES:
        path = queue_file_path(vuln_type, deliverables_dir)
        if not path.exists():
            continue
        try:
            vulnerabilities = load_queue(path)
        except DeliverableError as exc:
            logger.warning("Skipping unreadable queue file", extra={"path": str(path), "error": str(exc)})
            continue
        for entry in vulnerabilities:
            summaries.append(
                VulnerabilitySummary(
                    id=str(entry.get("ID", "")),
                    type=vuln_type.upper(),
                    vulnerability_type=str(entry.get("vulnerability_type") or "Unknown"),
                    source=str(entry.get("source") or entry.get("source_detail") or "Unknown"),
                    confidence=str(entry.get("confidence") or "Unknown"),
                    verdict=str(entry.get("verdict") or "Unknown"),
                )
            )
    return summaries


__all__ = [
    "DeliverableError",
    "VULN_TYPES",
    "VulnerabilitySummary",
    "find_vulnerability",
    "list_vulnerabilities",
    "load_queue",
    "parse_vuln_id",
    "queue_file_path",
    "save_deliverable",
]
