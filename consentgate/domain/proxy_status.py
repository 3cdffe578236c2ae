from __future__ import annotations

from enum import Enum


class ProxyStatus(str, Enum):
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    DISABLED = "DISABLED"


# Statuses that consume a plan slot; disabling a proxy does not free its slot.
ACTIVE_STATUSES = frozenset({ProxyStatus.CREATE_IN_PROGRESS, ProxyStatus.CREATE_COMPLETE})

# Statuses a read-through status query reconciles against the backend.
RECONCILABLE_STATUSES = frozenset({ProxyStatus.CREATE_IN_PROGRESS, ProxyStatus.DELETE_IN_PROGRESS})

# Proxies in these statuses may be re-created in place under their existing stack name.
# A running delete must settle first; the stack name is still taken.
RECREATABLE_STATUSES = frozenset(
    {
        ProxyStatus.CREATE_FAILED,
        ProxyStatus.DELETE_COMPLETE,
        ProxyStatus.DELETE_FAILED,
    }
)


def map_backend_status(raw_status: str | None) -> ProxyStatus | None:
    """Map a raw control-plane stack status onto the proxy lifecycle enum.

    Returns ``None`` for statuses that carry no lifecycle decision (unknown or
    empty), so callers leave the persisted state untouched.
    """
    if not raw_status:
        return None
    value = raw_status.strip().upper()
    if value.startswith("DELETE_"):
        if value == "DELETE_COMPLETE":
            return ProxyStatus.DELETE_COMPLETE
        if value == "DELETE_FAILED":
            return ProxyStatus.DELETE_FAILED
        if value == "DELETE_IN_PROGRESS":
            return ProxyStatus.DELETE_IN_PROGRESS
        return None
    # Any rollback means the create (or a later update) did not hold.
    if "FAILED" in value or "ROLLBACK" in value:
        return ProxyStatus.CREATE_FAILED
    if value.endswith("_COMPLETE") or value.endswith("_COMPLETE_CLEANUP_IN_PROGRESS"):
        return ProxyStatus.CREATE_COMPLETE
    if value.endswith("_IN_PROGRESS"):
        return ProxyStatus.CREATE_IN_PROGRESS
    return None


def effective_status(status: str, disabled: bool) -> str:
    # Disabled proxies surface as DISABLED to callers regardless of stack status.
    if disabled:
        return ProxyStatus.DISABLED.value
    return status
