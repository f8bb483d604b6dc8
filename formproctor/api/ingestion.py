"""
Violation ingestion endpoint.

Monitor sessions post accepted violations here. Storage is in-memory and
lasts for the process lifetime; this is a logging sink, not a system of
record.
"""

import json
import logging
import threading
from typing import Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..models.schemas import FailureResponse, IngestResponse, ViolationListResponse, ViolationReport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/proctoring", tags=["proctoring"])


class ViolationStore:
    """Per-form violation lists, safe to share between request threads."""

    def __init__(self):
        self._violations: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def add(self, form_id: str, violation: dict) -> int:
        """Store a violation and return the form's running total."""
        with self._lock:
            entries = self._violations.setdefault(form_id, [])
            entries.append(violation)
            return len(entries)

    def list(self, form_id: str) -> List[dict]:
        with self._lock:
            return list(self._violations.get(form_id, []))

    def count(self, form_id: str) -> int:
        with self._lock:
            return len(self._violations.get(form_id, []))

    def clear(self):
        with self._lock:
            self._violations.clear()


store = ViolationStore()


def failure(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=FailureResponse(message=message).model_dump())


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid field '{location}': {first.get('msg', 'invalid value')}"


@router.post("")
async def ingest_violation(request: Request):
    """Record one violation reported by a monitor session."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return failure("Request body must be valid JSON")

    if not isinstance(body, dict):
        return failure("Request body must be a JSON object")

    missing = [field for field in ("formId", "violation") if body.get(field) in (None, "")]
    if missing:
        return failure(f"Missing required field(s): {', '.join(missing)}")

    try:
        report = ViolationReport.model_validate(body)
    except ValidationError as e:
        return failure(_describe(e))

    total = store.add(report.form_id, report.violation.to_wire())
    logger.info(f"Violation received for form {report.form_id}: {report.violation.type.value} (total {total})")

    return IngestResponse(
        message="Proctoring data processed successfully.",
        total_violations=total,
    ).model_dump(by_alias=True)


@router.get("")
async def list_violations(formId: Optional[str] = None):
    """Return every violation recorded for a form."""
    if not formId:
        return failure("Missing required query parameter: formId")

    violations = store.list(formId)
    return ViolationListResponse(
        form_id=formId,
        violations=violations,
        total_violations=len(violations),
    ).model_dump(by_alias=True)
