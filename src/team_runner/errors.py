"""Exception types raised across the runner.

Agent failures and policy exhaustion are business outcomes and are recorded
as statuses, not raised past the coordinator. Infrastructure faults are
raised so callers can retry or re-enqueue the affected work item.
"""

from __future__ import annotations


class TeamRunnerError(Exception):
    """Base exception for team-runner."""


class ConfigurationError(TeamRunnerError):
    """Runtime settings are missing or inconsistent."""


class WorkItemNotFoundError(TeamRunnerError, KeyError):
    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} {item_id} does not exist")
        self.kind = kind
        self.item_id = item_id

    def __str__(self) -> str:
        return str(self.args[0])


class StateConflictError(TeamRunnerError):
    """The requested transition is not valid from the item's current status."""

    def __init__(self, kind: str, item_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} {kind} {item_id} while it is {current}")
        self.kind = kind
        self.item_id = item_id
        self.current = current
        self.action = action


class InfrastructureError(TeamRunnerError):
    """A dependency the runner relies on is unavailable."""


class StoreUnavailableError(InfrastructureError):
    """The status store could not complete a read or write."""


class AgentExecutionError(TeamRunnerError):
    """An agent invocation failed.

    ``retryable`` marks transient infrastructure faults (timeouts, rate limits,
    5xx responses) that the agent gateway may retry locally. Everything else is
    a permanent failure for policy purposes.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
