from fastapi import HTTPException


class InvoiceValidationError(HTTPException):
    """Bad input caught before any calculation or persistence (missing item, bad qty/rate)."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class CalculationError(HTTPException):
    """Non-finite result from inputs that passed validation."""

    def __init__(self, detail: str):
        super().__init__(status_code=422, detail=detail)


class ConsistencyError(HTTPException):
    """A reconciliation step could not be applied; the write transaction must roll back."""

    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)
