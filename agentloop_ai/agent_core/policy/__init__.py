"""Tool permission policy and approval handling.

- ``PermissionRules``: persistent per-category and per-tool allow/ask/deny rules.
- ``PermissionState``: rules plus the run's session grants and the ``yolo``
  override; resolves the effective policy for a tool.
- ``ApprovalGate``: pending ``ask`` decisions resolved by an external actor.
"""

from .approvals import AmbiguousApprovalError, ApprovalGate, PendingApproval
from .models import DEFAULT_CATEGORY_POLICIES, PermissionResolution, PermissionRules, PermissionState

__all__ = [
    "AmbiguousApprovalError",
    "ApprovalGate",
    "PendingApproval",
    "DEFAULT_CATEGORY_POLICIES",
    "PermissionResolution",
    "PermissionRules",
    "PermissionState",
]
