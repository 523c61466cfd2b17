"""
Station permissions.

Each station role may issue a fixed set of commands.  The table is the single
place that answers "may a triage desk finalize a consultation?"; the flow
state machine and checklist service consult it before touching the store.
The public display is read-only.
"""

from __future__ import annotations

from attendflow.models import StationRole

ACTIONS = (
    "register_arrival",
    "call",
    "recall",
    "mark_absent",
    "cancel_absent",
    "swap_out",
    "complete_triage",
    "revise_acuity",
    "finalize_consultation",
    "save_narrative",
    "request_document",
    "discharge_observation",
    "request_reevaluation",
    "complete_bed_transfer",
    "manage_checklist",
    "administer_checklist",
    "record_vitals",
    "add_nursing_note",
    "view_queue",
)

_GRANTS: dict[StationRole, frozenset[str]] = {
    StationRole.RECEPTION: frozenset({
        "register_arrival", "cancel_absent", "view_queue",
    }),
    StationRole.TRIAGE: frozenset({
        "call", "recall", "mark_absent", "cancel_absent", "swap_out",
        "complete_triage", "revise_acuity", "save_narrative", "record_vitals",
        "view_queue",
    }),
    StationRole.PHYSICIAN: frozenset({
        "call", "recall", "mark_absent", "cancel_absent", "swap_out",
        "revise_acuity", "finalize_consultation", "save_narrative",
        "request_document", "manage_checklist", "view_queue",
    }),
    StationRole.NURSING: frozenset({
        "administer_checklist", "record_vitals", "add_nursing_note",
        "discharge_observation", "request_reevaluation", "view_queue",
    }),
    StationRole.BED_DESK: frozenset({
        "complete_bed_transfer", "view_queue",
    }),
    StationRole.DISPLAY: frozenset({"view_queue"}),
}


def check_permission(role: StationRole, action: str) -> bool:
    """Whether ``role`` may perform ``action``.  Unknown actions are denied."""
    return action in _GRANTS.get(role, frozenset())


def require_permission(role: StationRole, action: str) -> None:
    """Raise ``PermissionError`` unless ``role`` may perform ``action``."""
    if not check_permission(role, action):
        raise PermissionError(
            f"Station role '{role.value}' is not permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: StationRole) -> dict[str, bool]:
    """Map every known action to whether ``role`` may perform it."""
    return {action: check_permission(role, action) for action in ACTIONS}
