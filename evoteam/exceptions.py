"""Custom exception hierarchy for evoteam."""


class EvoteamError(Exception):
    """Base for all evoteam errors."""


class AgentNotFoundError(EvoteamError):
    """No agent with the given ID exists."""


class TaskNotFoundError(EvoteamError):
    """No task with the given ID exists."""


class UnknownRoleError(EvoteamError):
    """A role name could not be resolved to a known role."""


class InvalidTransitionError(EvoteamError):
    """Invalid task status transition."""


class AssignmentIntegrityError(EvoteamError):
    """Task and agent assignment fields disagree."""


class StoreError(EvoteamError):
    """A store transaction failed."""


class SelfBreedingError(EvoteamError):
    """Crossover was asked to pair a genome with itself."""


class InsufficientPopulationError(EvoteamError):
    """Not enough candidates to select or breed from."""


class BudgetExceededError(EvoteamError):
    """A spend ceiling was breached."""


class InvalidConfidenceError(EvoteamError):
    """A confidence score fell outside [0, 1]."""
