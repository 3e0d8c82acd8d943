class APIError(Exception):
    """
    Base exception for all queue client errors.
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

class QueueServiceConnectionError(APIError):
    """
    Network failure talking to the Queue Service.
    Recovered by reconnect/poll on the patient side; never shown as a fault.
    """
    def __init__(self, message: str = "Cannot connect to the queue service.", status_code: int = 503):
        super().__init__(message, status_code)

class QueueServiceError(APIError):
    def __init__(self, message: str = "The queue service returned an unexpected response.", status_code: int = 500):
        super().__init__(message, status_code)

class PreconditionError(APIError):
    """
    A staff command was issued against a state that no longer permits it.
    Surfaced to the operator once; never retried.
    """
    def __init__(self, message: str = "The queue is no longer in a state that allows this action.", status_code: int = 409):
        super().__init__(message, status_code)

class InvalidTransitionError(PreconditionError):
    def __init__(self, message: str = "Invalid queue status transition.", status_code: int = 409):
        super().__init__(message, status_code)

class ActiveTicketConflictError(PreconditionError):
    """
    Raised when calling a ticket while another one in the department is already called or in progress.
    """
    def __init__(self, message: str = "Another ticket is already being served in this department.", status_code: int = 409):
        super().__init__(message, status_code)

class CommandInProgressError(PreconditionError):
    def __init__(self, message: str = "A command for this ticket is already in progress.", status_code: int = 429):
        super().__init__(message, status_code)

class MalformedMessageError(APIError):
    def __init__(self, message: str = "Malformed update message.", status_code: int = 422):
        super().__init__(message, status_code)

class InvalidVisitNumberError(APIError):
    def __init__(self, message: str = "Invalid visit number format (accepted: 0001, VN0001 or VN260112-0001).", status_code: int = 400):
        super().__init__(message, status_code)

class StaffAuthenticationError(APIError):
    def __init__(self, message: str = "Invalid staff username or password.", status_code: int = 401):
        super().__init__(message, status_code)

class QueueCreationError(APIError):
    def __init__(self, message: str = "Failed to create queue.", status_code: int = 400):
        super().__init__(message, status_code)
