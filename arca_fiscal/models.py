import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from .catalog import DOCUMENT_TYPES, LOCAL_CURRENCY, NOTE_TYPES, VAT_RATES, vat_rate_id

CUIT_RE = re.compile(r"^\d{2}-?\d{8}-?\d$")
# Tolerancia de redondeo al controlar la suma de importes
AMOUNT_TOLERANCE = Decimal("0.01")


def only_digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def full_number(sales_point: int, sequence_number: int) -> str:
    return f"{sales_point:05d}-{sequence_number:08d}"


class Environment(str, Enum):
    TEST = "TEST"
    PROD = "PROD"


class ConfigStatus(str, Enum):
    PENDING_SETUP = "PENDING_SETUP"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


class EmissionKind(str, Enum):
    CAE = "CAE"
    CAEA = "CAEA"


class DocumentStatus(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    REJECTED = "REJECTED"


# ——————————————————————————————————————————————————————————————
# Configuración fiscal del tenant
# ——————————————————————————————————————————————————————————————
class Ticket(BaseModel):
    token: str
    sign: str
    expires_at: datetime

    def is_usable(self, now: datetime, margin: timedelta) -> bool:
        """El ticket sirve solo si vence más allá del margen de seguridad."""
        return now < self.expires_at - margin


class FiscalConfig(BaseModel):
    tenant_id: str
    environment: Environment = Environment.TEST
    cuit: Optional[str] = None
    certificate: Optional[str] = None
    private_key: Optional[SecretStr] = None
    key_passphrase: Optional[SecretStr] = None
    status: ConfigStatus = ConfigStatus.PENDING_SETUP
    ticket: Optional[Ticket] = None
    last_error: Optional[str] = None
    certificate_expires: Optional[datetime] = None
    last_tested_at: Optional[datetime] = None

    def public_view(self) -> dict:
        """Datos aptos para devolver por la API: nunca incluye secretos."""
        return {
            "tenant_id": self.tenant_id,
            "environment": self.environment,
            "cuit": self.cuit,
            "status": self.status,
            "has_certificate": bool(self.certificate),
            "has_private_key": self.private_key is not None,
            "certificate_expires": self.certificate_expires,
            "last_tested_at": self.last_tested_at,
            "last_error": self.last_error,
        }


class FiscalConfigUpdate(BaseModel):
    environment: Optional[Environment] = None
    cuit: Optional[str] = None
    certificate: Optional[str] = None
    private_key: Optional[str] = None
    key_passphrase: Optional[str] = None

    @field_validator("cuit")
    @classmethod
    def validate_cuit(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not CUIT_RE.match(v.strip()):
            raise ValueError("CUIT inválido. Formato: XX-XXXXXXXX-X")
        return only_digits(v)


class SalesPoint(BaseModel):
    number: int = Field(ge=1, le=99998)
    name: Optional[str] = None
    active: bool = True
    emission_kind: EmissionKind = EmissionKind.CAE
    is_default: bool = False


class CertificateInfo(BaseModel):
    valid: bool
    subject: Optional[str] = None
    issuer: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    serial_number: Optional[str] = None
    is_expired: Optional[bool] = None
    days_to_expire: Optional[int] = None
    error: Optional[str] = None


class ServerStatus(BaseModel):
    app_server: Optional[str] = None
    db_server: Optional[str] = None
    auth_server: Optional[str] = None

    @property
    def all_online(self) -> bool:
        return self.app_server == "OK" and self.db_server == "OK" and self.auth_server == "OK"

    def summary(self) -> dict:
        return {**self.model_dump(), "all_online": self.all_online}


# ——————————————————————————————————————————————————————————————
# Borrador que llega desde la factura comercial
# ——————————————————————————————————————————————————————————————
class VatLine(BaseModel):
    rate: Decimal
    base: Decimal
    amount: Decimal

    @field_validator("rate")
    @classmethod
    def validate_rate(cls, v: Decimal) -> Decimal:
        if v not in VAT_RATES:
            raise ValueError(f"Alícuota de IVA no admitida: {v}")
        return v

    @property
    def afip_id(self) -> int:
        return vat_rate_id(self.rate)


class OtherTax(BaseModel):
    id: int
    description: str
    base: Decimal
    rate: Decimal
    amount: Decimal


class AssociatedDocument(BaseModel):
    document_type: int
    sales_point: int
    number: int
    cuit: Optional[str] = None
    issue_date: Optional[date] = None

    @field_validator("cuit")
    @classmethod
    def strip_cuit(cls, v: Optional[str]) -> Optional[str]:
        return only_digits(v) if v else v


class InvoiceDraft(BaseModel):
    sales_point: Optional[int] = None
    document_type: int
    concept: int = Field(default=1, ge=1, le=3)
    receiver_doc_type: int = 80
    receiver_doc_number: str
    issue_date: date = Field(default_factory=date.today)
    service_from: Optional[date] = None
    service_to: Optional[date] = None
    payment_due: Optional[date] = None
    total: Decimal
    net: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    exempt: Decimal = Decimal("0")
    untaxed: Decimal = Decimal("0")
    other_taxes: Decimal = Decimal("0")
    currency: str = LOCAL_CURRENCY
    exchange_rate: Decimal = Decimal("1")
    vat_lines: List[VatLine] = Field(default_factory=list)
    other_tax_lines: List[OtherTax] = Field(default_factory=list)
    associated_documents: List[AssociatedDocument] = Field(default_factory=list)

    @field_validator("document_type")
    @classmethod
    def validate_document_type(cls, v: int) -> int:
        if v not in DOCUMENT_TYPES:
            raise ValueError(f"Tipo de comprobante desconocido: {v}")
        return v

    @field_validator("receiver_doc_number", mode="before")
    @classmethod
    def strip_receiver(cls, v: Any) -> str:
        digits = only_digits(v)
        if not digits:
            raise ValueError("Documento del receptor requerido")
        return digits

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_amounts(self) -> "InvoiceDraft":
        if self.currency == LOCAL_CURRENCY and self.exchange_rate != 1:
            raise ValueError("La cotización de la moneda local debe ser 1")
        if self.exchange_rate <= 0:
            raise ValueError("La cotización debe ser positiva")
        parts = self.net + self.untaxed + self.exempt + self.vat + self.other_taxes
        if abs(parts - self.total) > AMOUNT_TOLERANCE:
            raise ValueError(
                f"El total {self.total} no coincide con la suma de importes {parts}"
            )
        if self.vat_lines:
            vat_sum = sum((line.amount for line in self.vat_lines), Decimal("0"))
            if abs(vat_sum - self.vat) > AMOUNT_TOLERANCE:
                raise ValueError(f"El IVA {self.vat} no coincide con las alícuotas ({vat_sum})")
        if self.associated_documents and self.document_type not in NOTE_TYPES:
            raise ValueError("Solo las notas de crédito/débito admiten comprobantes asociados")
        return self

    @property
    def includes_services(self) -> bool:
        return self.concept >= 2


# ——————————————————————————————————————————————————————————————
# Resultados del protocolo de autorización
# ——————————————————————————————————————————————————————————————
class Observation(BaseModel):
    code: int
    message: str


class Outcome(BaseModel):
    sales_point: int
    document_type: int
    sequence_number: int
    full_number: str
    observations: List[Observation] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)


class Approval(Outcome):
    result: Literal["A"] = "A"
    cae: str
    cae_expires_at: date
    reprocessed: bool = False


class ReprocessedApproval(Approval):
    """ARCA detectó un envío duplicado y devolvió el CAE ya emitido."""

    reprocessed: bool = True
    warning: str = "Comprobante reprocesado por ARCA: el CAE corresponde a un envío previo"


class DomainRejection(Outcome):
    """Rechazo esperado de ARCA: no hay CAE y el número sigue libre para un reintento corregido."""

    result: Literal["R"] = "R"

    def describe(self) -> str:
        if not self.observations:
            return "Comprobante rechazado: sin detalles"
        return "Comprobante rechazado: " + "; ".join(
            f"[{o.code}] {o.message}" for o in self.observations
        )


class DocumentSnapshot(BaseModel):
    sales_point: int
    document_type: int
    number: int
    result: Optional[str] = None
    cae: Optional[str] = None
    cae_expires_at: Optional[date] = None
    issue_date: Optional[date] = None
    total: Optional[Decimal] = None
    receiver_doc_type: Optional[int] = None
    receiver_doc_number: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# ——————————————————————————————————————————————————————————————
# Registro persistido
# ——————————————————————————————————————————————————————————————
class FiscalDocument(BaseModel):
    id: Optional[int] = None
    tenant_id: str
    invoice_id: Optional[str] = None
    sales_point: int
    document_type: int
    sequence_number: int
    full_number: str
    concept: int
    receiver_doc_type: int
    receiver_doc_number: str
    issue_date: date
    total: Decimal
    net: Decimal
    vat: Decimal
    exempt: Decimal
    untaxed: Decimal
    other_taxes: Decimal
    currency: str
    exchange_rate: Decimal
    cae: Optional[str] = None
    cae_expires_at: Optional[date] = None
    status: DocumentStatus
    reprocessed: bool = False
    observations: List[Observation] = Field(default_factory=list)
    qr_url: Optional[str] = None
    raw_response: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class CaeGrant(BaseModel):
    """Lo único que la factura comercial recibe para guardar."""

    cae: str
    cae_expires_at: date
    sequence_number: int
    full_number: str
    qr_url: str
    document_id: Optional[int] = None
    reprocessed: bool = False
    warning: Optional[str] = None


class AuthorizationResult(BaseModel):
    status: DocumentStatus
    document: FiscalDocument
    grant: Optional[CaeGrant] = None
    rejection: Optional[DomainRejection] = None
