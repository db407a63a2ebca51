class CiceroError(Exception):
    pass


class SchedulerStateUnavailableError(CiceroError):
    pass


class ClientProcessingError(CiceroError):
    def __init__(self, client_id: str, step: str, cause: BaseException):
        self.client_id = client_id
        self.step = step
        self.cause = cause
        super().__init__(f"{client_id} failed during {step}: {cause}")


class DeliveryError(CiceroError):
    """Raised when the message transport reports a failed send without raising."""
