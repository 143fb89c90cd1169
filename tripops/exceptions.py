class TripOpsError(Exception):
    """Base class for errors surfaced to callers of the engine."""

class TripNotFound(TripOpsError):
    def __init__(self, trip_id):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id

class InvalidEventType(TripOpsError):
    def __init__(self, event_type):
        super().__init__(f"Unsupported event type: {event_type!r}")
        self.event_type = event_type
