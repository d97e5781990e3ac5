"""Root of the pytaxis exception hierarchy.

Every error raised by the package derives from PytaxisError so callers can
catch library failures without catching unrelated exceptions. Concrete
errors live beside the module that raises them:

    - pytaxis.graph.errors: structural graph errors
    - pytaxis.workflow.errors: definition and execution errors
    - pytaxis.scheduler.errors: job and queue errors
    - pytaxis.storage.base: StorageError
    - pytaxis.deadletter: DeadLetterError
"""


class PytaxisError(Exception):
    """Base class for all pytaxis errors."""

    pass
