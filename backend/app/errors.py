"""Error taxonomy shared by the REST surface and the socket channel.

REST handlers let these propagate; the exception handler registered in
``app.main`` turns them into ``{"error": message}`` JSON responses with the
attached status code. Socket handlers catch them per event and log them so
that a single bad event never closes the connection.
"""


class ChatError(Exception):
    """Base exception for chat backend errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(ChatError):
    """Raised when a token is missing, malformed, expired, or unknown."""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class PermissionDeniedError(ChatError):
    """Raised when an authenticated user may not perform an action."""
    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, status_code=403)


class NotFoundError(ChatError):
    """Raised when a chat, message or user does not exist."""
    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}", status_code=404)


class ValidationError(ChatError):
    """Raised for malformed payloads and rule violations."""
    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class PersistenceError(ChatError):
    """Raised when the store fails to complete an operation."""
    def __init__(self, message: str):
        super().__init__(f"Store error: {message}", status_code=500)
