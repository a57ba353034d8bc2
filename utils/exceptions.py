"""
Deposit engine exceptions

Validation and state errors are raised to the initiating caller before any side
effect. Scheduler code catches them per record; they never reach the loop.
"""


class DepositEngineError(Exception):
    """Base exception for deposit engine errors"""

    pass


class InvalidInput(DepositEngineError):
    """Malformed creation or request parameters"""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class InvalidState(DepositEngineError):
    """Illegal enum value, or an action attempted from an incompatible status"""

    pass


class NotFound(DepositEngineError):
    """Unknown deposit or task identifier"""

    pass


class DepositNotFound(NotFound):
    def __init__(self, deposit_id: str):
        super().__init__(f"Deposit not found: {deposit_id}")
        self.deposit_id = deposit_id


class TaskNotFound(NotFound):
    def __init__(self, name: str):
        super().__init__(f"Task not found: {name}")
        self.name = name


class TaskExists(DepositEngineError):
    """A scheduled task with the same name is already registered"""

    def __init__(self, name: str):
        super().__init__(f"Task with name '{name}' already exists")
        self.name = name


class PaymentGatewayError(DepositEngineError):
    """External payment gateway failure, rejection or timeout"""

    def __init__(self, message: str, status_code: int = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class LockTimeoutError(DepositEngineError):
    """A per-deposit lock could not be acquired within the configured bound"""

    def __init__(self, deposit_id: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock on deposit {deposit_id}")
        self.deposit_id = deposit_id
        self.timeout = timeout
