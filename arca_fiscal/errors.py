"""
Taxonomía de errores del subsistema fiscal.

Cada error lleva el contexto de la operación remota (qué llamada, qué tenant,
qué clave de numeración) para que el mensaje que llega al log o al cliente
HTTP sea autoexplicativo. Solo ``TransientError`` indica que reintentar es
seguro, y siempre re-consultando el último número autorizado.

El rechazo de un comprobante por parte de ARCA no es una excepción: es un
resultado terminal (ver ``models.DomainRejection``).
"""
from typing import Optional, Tuple


class FiscalError(Exception):
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        tenant_id: Optional[str] = None,
        document_key: Optional[Tuple[int, int]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.tenant_id = tenant_id
        self.document_key = document_key
        self.code = code

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"op={self.operation}")
        if self.tenant_id:
            context.append(f"tenant={self.tenant_id}")
        if self.document_key:
            pto_vta, tipo = self.document_key
            context.append(f"ptoVta={pto_vta} tipo={tipo}")
        if self.code:
            context.append(f"code={self.code}")
        if not context:
            return self.message
        return f"{self.message} [{' '.join(context)}]"

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "operation": self.operation,
            "code": self.code,
        }


class ConfigurationError(FiscalError):
    """Certificado, clave o CUIT faltantes o ilegibles. No se reintenta."""


class AuthenticationError(FiscalError):
    """WSAA rechazó el ticket de acceso firmado."""


class ProtocolError(FiscalError):
    """Respuesta malformada o lista de errores de nivel superior de ARCA."""


class TransientError(FiscalError):
    """Conectividad o timeout. Reintentable re-consultando la numeración."""

    retryable = True


class RecordConflictError(FiscalError):
    """Se intentó pisar un comprobante ya AUTORIZADO."""
