"""Domain error taxonomy surfaced by the services to their callers."""


class DomainError(Exception):
    """Base class for every failure the ride services report."""


class NotFound(DomainError):
    pass


class RideNotFound(NotFound):
    def __init__(self, ride_id: str):
        super().__init__(f"Ride not found: {ride_id}")
        self.ride_id = ride_id


class DriverNotFound(NotFound):
    def __init__(self, driver_id: str):
        super().__init__(f"Driver not found: {driver_id}")
        self.driver_id = driver_id


class NoDriversAvailable(DomainError):
    """No available driver within the search radius of the pickup."""


class InvalidStateTransition(DomainError):
    """Raised when a ride status change violates the state machine."""


class Unauthorized(DomainError):
    """The caller is not a party allowed to act on the ride."""


class ValidationError(DomainError):
    """Malformed coordinates, rating out of range and similar input errors."""
