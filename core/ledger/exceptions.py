"""Custom exception classes for the energy ledger.

Arithmetic and validation paths report problems as data (ValidationResult and
audit records). These exceptions cover the few places that do raise.
"""


class LedgerException(Exception):
    """Base exception for all ledger components."""
    pass


class InvalidCalculationInputError(LedgerException, ValueError):
    """Raised when a value cannot be rounded safely (non-finite or too large)."""

    def __init__(self, value=None, message=None):
        if message is None:
            message = f"Invalid value for calculation: {value}"
        super().__init__(message)
        self.value = value


class SystemConfigurationError(LedgerException):
    """Raised when settings or configuration files are invalid."""

    def __init__(self, component=None, message=None):
        if message is None:
            if component:
                message = f"Configuration error in {component}"
            else:
                message = "System configuration error"
        super().__init__(message)
        self.component = component


class LedgerStorageError(LedgerException):
    """Raised when a device ledger cannot be read from or written to storage."""

    def __init__(self, device_id=None, message=None):
        if message is None:
            if device_id:
                message = f"Storage failure for device {device_id}"
            else:
                message = "Ledger storage failure"
        super().__init__(message)
        self.device_id = device_id
