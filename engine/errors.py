"""Exception taxonomy for the resolution core."""


class MasteryError(Exception):
    """Base class for every error raised by the core."""


class RuleViolation(MasteryError, ValueError):
    """A request broke a game rule. Nothing was changed."""


class InsufficientStones(RuleViolation):
    pass


class UnknownAbility(RuleViolation):
    pass


class InvalidPurchase(RuleViolation):
    pass


class InvalidAllocation(RuleViolation):
    pass


class NotAuthorized(RuleViolation):
    pass


class UnknownActor(RuleViolation):
    pass


class CollaboratorError(MasteryError):
    """An external collaborator failed. Nothing was committed; safe to retry."""


class PersistenceError(CollaboratorError):
    pass


class ChoiceFailed(CollaboratorError):
    pass
