class PlanningError(Exception):
    """
    Base class for everything the planning engine reports to the user.
    """


class UserInputError(PlanningError):
    """
    The gesture or form input cannot be acted upon. Nothing was changed.
    """


class NetworkError(PlanningError):
    """
    Transport failure or unusable response. Retrying is always possible.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServerValidationError(PlanningError):
    """
    The backend rejected the request as a whole.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CacheAnomaly(PlanningError):
    """
    A cached entry does not have the expected shape.
    """
