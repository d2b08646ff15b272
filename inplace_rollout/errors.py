class RolloutError(Exception):
    """Base class for errors raised by a reconciliation pass"""


class ClusterError(RolloutError):
    """A remote call against the cluster failed"""

    def __init__(self, operation, name, message="remote call failed"):
        super().__init__(f"{operation} {name}: {message}")
        self.operation = operation
        self.name = name


class NotFoundError(ClusterError):
    def __init__(self, operation, name):
        super().__init__(operation, name, "not found")


class InvariantViolationError(RolloutError):
    """Replica arithmetic produced a value that can only come from a budget-accounting bug"""


class OwnershipTransferError(RolloutError):
    """Moving a machine to the new machine set failed part way through a pass.

    ``original`` is the error of the failed machine patch. The scale calls that
    compensate for the machines already moved are best effort; ``compensated``
    tells whether both of them went through.
    """

    def __init__(self, machine, original, added_new_replicas_count, compensated):
        super().__init__(
            f"failed to transfer the ownership of machine {machine}: {original} "
            f"({added_new_replicas_count} machines already transferred, compensated={compensated})"
        )
        self.machine = machine
        self.original = original
        self.added_new_replicas_count = added_new_replicas_count
        self.compensated = compensated

    @property
    def partial_progress(self):
        return self.added_new_replicas_count > 0
