"""Error types raised inside Warroom.

Public orchestrator operations convert these into failed ``OperationResult``
values; they only escape when a caller uses the lower-level helpers directly.
"""


class WarroomError(Exception):
    """Base class for Warroom errors."""


class PlanLoadError(WarroomError):
    """plan.json is unreadable or fails validation."""


class RunNotFoundError(WarroomError):
    """The run directory has no plan.json."""


class UnsupportedOperationError(WarroomError):
    """The lane's launch mode cannot perform the requested operation.

    Terminal-window lanes have no process handle, so suspend/continue
    signals cannot be delivered to them.
    """


class LaunchError(WarroomError):
    """A lane's agent process or terminal window could not be started."""
