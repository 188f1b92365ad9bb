"""Custom exception hierarchy for tasklattice storage layers."""


class TaskLatticeError(Exception):
    """Base exception for all tasklattice errors."""

    pass


class RecordStoreError(TaskLatticeError):
    """Record store could not complete an operation."""

    pass


class RecordNotFoundError(RecordStoreError):
    """No record exists for the requested task id.

    Attributes:
        task_id: The id that was looked up
    """

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class GraphStoreError(TaskLatticeError):
    """Graph store failure (schema, connectivity or constraint violation)."""

    pass


class EdgeEndpointMissingError(GraphStoreError):
    """An edge was requested between nodes that do not both exist.

    Attributes:
        from_id: Source node id
        to_id: Target node id
    """

    def __init__(self, kind: str, from_id: str, to_id: str):
        super().__init__(
            f"Cannot create {kind} edge {from_id} -> {to_id}: both endpoints must exist"
        )
        self.kind = kind
        self.from_id = from_id
        self.to_id = to_id


class UnsupportedTraversalError(GraphStoreError):
    """The graph backend does not implement the requested traversal."""

    def __init__(self, backend: str, traversal: str):
        super().__init__(f"{backend} does not support traversal '{traversal}'")
        self.backend = backend
        self.traversal = traversal
