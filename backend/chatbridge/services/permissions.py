from __future__ import annotations

import enum
from dataclasses import asdict, dataclass


class PermissionMode(str, enum.Enum):
    deny = "deny"
    readonly = "readonly"
    allow = "allow"


class RuleAction(str, enum.Enum):
    allow = "allow"
    deny = "deny"


class PermissionReply(str, enum.Enum):
    once = "once"
    always = "always"
    reject = "reject"


# Tools that mutate state or reach outside the workspace.
READONLY_DENIED: tuple[str, ...] = (
    "bash",
    "edit",
    "task",
    "todowrite",
    "external_directory",
    "webfetch",
)


@dataclass(frozen=True)
class PermissionRule:
    permission: str
    pattern: str
    action: RuleAction

    def as_dict(self) -> dict[str, str]:
        payload = asdict(self)
        payload["action"] = self.action.value
        return payload


def compile_rules(mode: PermissionMode | str) -> list[PermissionRule]:
    """Ordered rule list for ``mode``; the agent applies the first match."""
    mode = PermissionMode(mode)

    if mode == PermissionMode.deny:
        return [PermissionRule("*", "*", RuleAction.deny)]

    if mode == PermissionMode.readonly:
        return [PermissionRule("*", "*", RuleAction.allow)] + [
            PermissionRule(permission, "*", RuleAction.deny) for permission in READONLY_DENIED
        ]

    return [PermissionRule("*", "*", RuleAction.allow)]


def permission_reply(mode: PermissionMode | str) -> PermissionReply:
    """Answer for a tool permission prompt raised while running under ``mode``.

    Only allow mode grants; deny and readonly reject so a prompt can never widen
    the session's rule list.
    """
    if PermissionMode(mode) == PermissionMode.allow:
        return PermissionReply.always
    return PermissionReply.reject
