"""Pure snapshot-document merge helpers shared by every repository backend."""

from __future__ import annotations

import copy
import re
from typing import Any, Dict, Optional, Union

from ...core.errors import InvalidRunStateError, SnapshotIntegrityError
from ..schemas.domain import StepResult, WorkflowRunState

_SURROGATES = re.compile("[\ud800-\udfff]")


def sanitize(value: Any) -> Any:
    """Drop NUL characters and lone surrogates that JSON columns reject."""
    if isinstance(value, str):
        return _SURROGATES.sub("", value.replace("\x00", ""))
    if isinstance(value, dict):
        return {sanitize(k): sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def empty_document(run_id: str) -> Dict[str, Any]:
    return WorkflowRunState.empty(run_id).to_document()


def step_document(result: Union[StepResult, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(result, StepResult):
        return result.to_document()
    return copy.deepcopy(dict(result))


def merge_step_result(
    document: Dict[str, Any],
    step_id: str,
    result: Union[StepResult, Dict[str, Any]],
    request_context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Return a new document with ``context[step_id]`` set and request context merged."""
    merged = copy.deepcopy(document)
    context = dict(merged.get("context") or {})
    context[step_id] = step_document(result)
    merged["context"] = context
    merged["requestContext"] = {**(merged.get("requestContext") or {}), **(request_context or {})}
    return merged


def check_status(document: Dict[str, Any], expected_status: Optional[str], *, run_id: str) -> None:
    """Raise ``InvalidRunStateError`` unless the document is in ``expected_status``."""
    if expected_status is None:
        return
    status = str(document.get("status"))
    if status != expected_status:
        raise InvalidRunStateError(run_id, status, expected_status)


def merge_state(
    document: Dict[str, Any], opts: Dict[str, Any], *, operation: str, workflow_name: str, run_id: str
) -> Dict[str, Any]:
    """Return a new document with ``opts`` shallow-merged over it.

    Raises:
        SnapshotIntegrityError: If the stored document has no context map.
    """
    if not isinstance(document.get("context"), dict):
        raise SnapshotIntegrityError(operation, workflow_name, run_id, "snapshot has no context map")
    merged = copy.deepcopy(document)
    merged.update(copy.deepcopy(opts))
    return merged
