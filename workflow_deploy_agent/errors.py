"""Exception taxonomy for the workflow deployment agent.

Recoverable requester problems (ValidationError) are handled inside the
conversation by re-prompting. Design and capacity problems are surfaced to
the requester with a human-readable cause. Engine failures are NOT raised:
the engine client returns error dicts, and the coordinator classifies them
into models.ErrorClass.
"""

from __future__ import annotations


class WorkflowAgentError(Exception):
    """Base class for every domain error raised by this package."""


class ValidationError(WorkflowAgentError):
    """Requester input is malformed or incomplete.

    errors: list of human-readable problems, one per offending fact.
    """

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class DesignError(WorkflowAgentError):
    """Requirements cannot be mapped to a workflow definition.

    capability:   the unsupported capability name, when one is to blame.
    alternatives: supported capabilities the requester could use instead.
    """

    def __init__(
        self,
        message: str,
        capability: str | None = None,
        alternatives: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.capability = capability
        self.alternatives = alternatives


class UnrepairableDefinitionError(DesignError):
    """Healing would have produced a broken graph (e.g. an orphaned node)."""


class ImmutableDefinitionError(WorkflowAgentError):
    """A definition already accepted by the engine may not be modified."""


class TenantIsolationError(WorkflowAgentError):
    """A workflow name does not carry the owning tenant's tag."""


class SlotExhaustionError(WorkflowAgentError):
    """Every slot in the pool is already assigned to a tenant."""

    def __init__(self, capacity: int) -> None:
        super().__init__(
            f"No isolation slot available: all {capacity} slots are assigned. "
            "Capacity must be increased before new tenants can sign up."
        )
        self.capacity = capacity


class SessionNotFoundError(WorkflowAgentError):
    pass


class SessionClosedError(WorkflowAgentError):
    """The session is Completed or Failed; start a new one instead."""


class CompletionError(WorkflowAgentError):
    """The text-completion collaborator failed."""


class CompletionTimeout(CompletionError):
    pass


class CompletionRateLimited(CompletionError):
    pass
