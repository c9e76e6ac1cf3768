"""
Transition-table helpers shared by the lifecycle services.

Each lifecycle declares its machine as ``{action: {"from": [...], "to": str}}``
next to its model. The services consult the table once per operation;
no service assigns a status without going through here.
"""

from takharrujy.core.exceptions import TransitionError


def validate_transition(transitions: dict, current: str, action: str) -> dict:
    """Validate whether ``action`` is legal from ``current``."""
    rule = transitions.get(action)
    if not rule:
        return {"valid": False, "from": current, "to": None,
                "reason": f"Unknown action: {action}"}

    if current not in rule["from"]:
        return {"valid": False, "from": current, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{current}'"}

    return {"valid": True, "from": current, "to": rule["to"], "reason": None}


def next_status(transitions: dict, entity, action: str, resource: str) -> str:
    """Return the target status of ``action`` or raise TransitionError."""
    result = validate_transition(transitions, entity.status, action)
    if not result["valid"]:
        raise TransitionError(resource, entity.id, action, entity.status, result["reason"])
    return result["to"]


def available_actions(transitions: dict, current: str) -> list[str]:
    """Actions whose ``from`` list contains ``current``."""
    return [action for action, rule in transitions.items() if current in rule["from"]]
