"""Canonical action vocabulary shared by every platform.

Adapters hand over the raw action string exactly as the platform reports it;
the persistence engine maps it through :func:`canonical_action` before any
lookup or insert, so ``git_actions`` only ever holds names from
``CANONICAL_ACTIONS``.
"""

from __future__ import annotations

CANONICAL_ACTIONS = frozenset(
    {
        "approve",
        "close",
        "comment",
        "create",
        "delete",
        "fork",
        "issue",
        "membership",
        "merge",
        "publish",
        "pull_request",
        "push",
        "release",
        "reopen",
        "review",
        "star",
        "wiki",
    }
)

GITHUB_ACTIONS: dict[str, str] = {
    "pushevent": "push",
    "createevent": "create",
    "deleteevent": "delete",
    "pullrequestevent": "pull_request",
    "pullrequestreviewevent": "review",
    "pullrequestreviewcommentevent": "comment",
    "pullrequestreviewthreadevent": "review",
    "issuesevent": "issue",
    "issuecommentevent": "comment",
    "commitcommentevent": "comment",
    "releaseevent": "release",
    "forkevent": "fork",
    "watchevent": "star",
    "gollumevent": "wiki",
    "memberevent": "membership",
    "publicevent": "publish",
}

GITLAB_ACTIONS: dict[str, str] = {
    "pushed to": "push",
    "pushed new": "push",
    "deleted": "delete",
    "created": "create",
    "opened": "create",
    "imported": "create",
    "closed": "close",
    "reopened": "reopen",
    "merged": "merge",
    "accepted": "merge",
    "approved": "approve",
    "commented on": "comment",
    "joined": "membership",
    "left": "membership",
    "destroyed": "delete",
    "expired": "membership",
}

PLATFORM_ACTIONS: dict[str, dict[str, str]] = {
    "github": GITHUB_ACTIONS,
    "gitlab": GITLAB_ACTIONS,
}


def canonical_action(platform: str, raw_action: str | None) -> str | None:
    if not isinstance(raw_action, str):
        return None
    key = " ".join(raw_action.strip().lower().split())
    if not key:
        return None
    return PLATFORM_ACTIONS.get(platform, {}).get(key)
