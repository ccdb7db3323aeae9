"""
Errores de dominio del till.

Cada error lleva el status HTTP con el que lo exponen los routers y un
código corto estable para el front.
"""


class TillError(Exception):
    status_code = 400
    code = "TILL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(TillError):
    """Faltan datos o montos inválidos; se detecta antes de enviar nada."""

    status_code = 422
    code = "VALIDATION_ERROR"


class LookupNotFound(TillError):
    status_code = 404
    code = "NOT_FOUND"


class NetworkError(TillError):
    """Fallo de red o respuesta de error del ERP. Reintentable, sin reintento automático."""

    status_code = 502
    code = "NETWORK_ERROR"


class RateUnavailable(TillError):
    """No hay tasa contable positiva: el cobro queda deshabilitado."""

    status_code = 503
    code = "NO_EXCHANGE_RATE"

    def __init__(self, message: str = "NO_EXCHANGE_RATE"):
        super().__init__(message)
