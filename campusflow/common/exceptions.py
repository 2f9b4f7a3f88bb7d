class CampusFlowError(Exception):
    """Base exception for all campusflow errors."""
    pass

class StoreUnavailableError(CampusFlowError):
    """Raised when the backing store cannot be reached or times out."""
    pass

class InvalidStateError(CampusFlowError):
    """Raised when a light or road update would break a data invariant."""
    pass

class NotFoundError(CampusFlowError):
    """Raised when an intersection, road, light or vehicle does not exist."""
    pass

class ConfigurationError(CampusFlowError):
    """Raised when configuration is invalid."""
    pass
