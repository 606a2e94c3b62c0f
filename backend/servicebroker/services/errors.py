class BrokerError(ValueError):
    """Base class for user-visible negotiation errors."""


class BrokerValidationError(BrokerError):
    pass


class BrokerNotFoundError(BrokerError):
    pass


class BrokerPermissionError(BrokerError):
    pass


class BrokerConflictError(BrokerError):
    pass


class BrokerTransitionError(BrokerError):
    """Operation is not legal for the entity's current state."""
