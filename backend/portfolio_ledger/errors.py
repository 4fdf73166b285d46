from __future__ import annotations


class LedgerError(Exception):
    status_code = 400

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class LedgerValidationError(LedgerError):
    status_code = 422

    def __init__(self, message: str) -> None:
        super().__init__("VALIDATION_ERROR", message)


class InsufficientFunds(LedgerError):
    def __init__(self, message: str) -> None:
        super().__init__("INSUFFICIENT_FUNDS", message)


class InsufficientLeverage(LedgerError):
    def __init__(self, message: str) -> None:
        super().__init__("INSUFFICIENT_LEVERAGE", message)


class NotFound(LedgerError):
    status_code = 404

    def __init__(self, code: str, message: str) -> None:
        super().__init__(code, message)


class DataUnavailable(LedgerError):
    """Raised by providers when market or FX data cannot be fetched.

    Valuation paths catch it and fall back to documented defaults, so it
    only reaches the HTTP layer from the raw market-data routes.
    """

    status_code = 503

    def __init__(self, message: str) -> None:
        super().__init__("DATA_UNAVAILABLE", message)


class PersistenceError(LedgerError):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__("PERSISTENCE_ERROR", message)


class VersionConflict(LedgerError):
    status_code = 409

    def __init__(self, message: str) -> None:
        super().__init__("VERSION_CONFLICT", message)


class LedgerInvariantError(LedgerError):
    status_code = 409

    def __init__(self, message: str) -> None:
        super().__init__("LEDGER_INVARIANT_VIOLATION", message)
