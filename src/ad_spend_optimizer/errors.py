"""
Exception types for the Ad Spend Optimizer
"""


class OptimizerError(Exception):
    """Base class for engine errors"""


class DataUnavailableError(OptimizerError):
    """No data at all for a scope; per-segment gaps fall back instead of raising"""


class ScopeConflictError(OptimizerError):
    """An execution batch is already in flight for the scope"""

    def __init__(self, scope_id: str):
        super().__init__(f"Execution already in progress for scope {scope_id}")
        self.scope_id = scope_id


class PlanStateError(OptimizerError):
    """Plan lifecycle violation (e.g. executing a plan that is not approved)"""


class RecordNotFoundError(OptimizerError, KeyError):
    """Plan, execution record, prediction, batch or review does not exist"""

    def __str__(self):
        return str(self.args[0]) if self.args else ''


class InvalidTransitionError(OptimizerError):
    """Ledger status change outside pending->applied|failed, applied->rolled_back"""


class NotTrackableError(OptimizerError):
    """Effect tracking requested for a record that never applied"""


class RollbackError(OptimizerError):
    """A rollback attempt was rejected or failed; it is never retried automatically"""


class MutationError(OptimizerError):
    """The advertising network rejected a change"""
