"""Exception types raised by the TABPILOT core."""


class TabPilotError(Exception):
    """Base class for all TABPILOT errors."""


class InvalidTransitionError(TabPilotError):
    """Raised for an unknown status or decision, or a move the state machine forbids."""


class PlanningError(TabPilotError):
    """Raised when the planning service cannot produce a usable plan."""


class SessionBusyError(TabPilotError):
    """Raised when a second run is started on a session that already has one in flight."""


class BudgetExceededError(TabPilotError):
    """Raised by the router once a run has spent its token or dollar cap."""
