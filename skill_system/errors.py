CYCLE_ERROR_MESSAGE = "Circular skill connections are not allowed."


class SkillGraphError(Exception):
    """Base exception for skill graph operations."""


class CycleError(SkillGraphError):
    """Raised when a proposed edge would close a loop (self-loops included)."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(CYCLE_ERROR_MESSAGE)


class NodeNotFoundError(SkillGraphError, KeyError):
    """Raised when an explicit lookup names a node that is not in the graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")

    def __str__(self):
        return self.args[0]


class PersistenceError(SkillGraphError):
    """
    Final failure of a storage or broadcast side effect.
    The local graph keeps its optimistic state; this only feeds a notification.
    """

    def __init__(self, message: str, cause: Exception = None):
        self.message = message
        self.cause = cause
        super().__init__(message)
