"""Focused re-test of a single exploitation-queue finding after a fix."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .context import RunContext
from .deliverables import DeliverableError, save_deliverable

logger = logging.getLogger(__name__)


class ValidationStatus(str, Enum):
    FIXED = "FIXED"
    STILL_VULNERABLE = "STILL_VULNERABLE"
    CANNOT_TEST = "CANNOT_TEST"


def result_filename(vuln_id: str) -> str:
    return f"validation_result_{vuln_id}.json"


def validation_prompt(vuln: dict[str, Any], web_url: str, *, deliverables_path: str = "deliverables") -> str:
    """Prompt asking an agent to re-test one vulnerability and record a verdict."""

    vuln_id = vuln["ID"]
    details = {key: value for key, value in vuln.items() if not key.startswith("_")}
    statuses = " | ".join(f'"{status.value}"' for status in ValidationStatus)
    return f"""# Vulnerability Fix Validation

## Objective
Determine whether one specific vulnerability has been fixed. Test only this vulnerability.

## Target
- **Web URL**: {web_url}
- **Vulnerability ID**: {vuln_id}
- **Type**: {vuln.get('vulnerability_type') or vuln.get('_type', 'unknown')}

## Vulnerability Details
```json
{json.dumps(details, indent=2, sort_keys=True)}
```

## Instructions
1. Navigate to the vulnerable endpoint or page.
2. Reproduce the vulnerability with the witness payload or an equivalent test.
3. Observe whether it still triggers.
4. Document the exact steps you ran.

## Verdict
- No longer triggers: **FIXED**
- Still triggers: **STILL_VULNERABLE**
- Cannot be exercised (for example the endpoint was removed): **CANNOT_TEST**, with the reason

## Output
Write `{deliverables_path}/{result_filename(vuln_id)}`:
```json
{{
  "vuln_id": "{vuln_id}",
  "validation_timestamp": "<ISO timestamp>",
  "status": {statuses},
  "evidence": "<what you observed>",
  "test_performed": "<the test you ran>",
  "recommendation": "<next steps if still vulnerable>"
}}
```

Do not scan for other issues.
"""


def load_validation_result(deliverables_dir: Path, vuln_id: str) -> dict[str, Any]:
    """Read and normalize the result file an agent wrote for ``vuln_id``."""

    path = Path(deliverables_dir) / result_filename(vuln_id)
    if not path.exists():
        raise DeliverableError(f"Validation result not written: {path}")
    try:
        result = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise DeliverableError(f"Validation result {path} is not valid JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise DeliverableError(f"Validation result {path} must be a JSON object")

    status = str(result.get("status", "")).strip().upper().replace(" ", "_")
    try:
        result["status"] = ValidationStatus(status).value
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ValidationStatus)
        raise DeliverableError(
            f"Validation result {path} has status {result.get('status')!r}; expected one of {allowed}"
        ) from exc
    result["vuln_id"] = vuln_id
    result.setdefault("validation_timestamp", datetime.now(timezone.utc).isoformat())
    return result


def save_validation_result(context: RunContext, result: dict[str, Any]) -> Path:
    """Persist ``result`` as ``validation_result_<ID>.json`` in the run's deliverables."""

    path = save_deliverable(
        context, result_filename(result["vuln_id"]), json.dumps(result, indent=2, sort_keys=True) + "\n"
    )
    logger.info(
        "Saved validation result",
        extra={"vuln_id": result["vuln_id"], "status": result.get("status"), "path": str(path)},
    )
    return path


__all__ = [
    "ValidationStatus",
    "load_validation_result",
    "result_filename",
    "save_validation_result",
    "validation_prompt",
]
