class BroadcastError(Exception):
    """Base class for broadcast engine errors; carries the HTTP status routes should answer with."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BroadcastValidationError(BroadcastError):
    pass


class EmptyAudienceError(BroadcastError):
    status_code = 404

    def __init__(self, message: str = "No users found for this broadcast"):
        super().__init__(message)


class BroadcastNotFound(BroadcastError):
    status_code = 404

    def __init__(self, message: str = "Notification not found"):
        super().__init__(message)


class BroadcastStateError(BroadcastError):
    pass
