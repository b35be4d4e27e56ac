import datetime
import logging
from typing import Callable, List, Optional, Tuple
from .config import Settings, settings as default_settings
from .crypto import SecretBox
from .db import PostgresConfigStore, PostgresDocumentRepository, PostgresSalesPointRegistry, get_pool
from .errors import AuthenticationError, ConfigurationError, ProtocolError
from .locks import AdvisoryLock, KeyedLock
from .models import (
    Approval,
    AuthorizationResult,
    CertificateInfo,
    ConfigStatus,
    DocumentSnapshot,
    EmissionKind,
    FiscalConfig,
    FiscalConfigUpdate,
    FiscalDocument,
    InvoiceDraft,
    SalesPoint,
    ServerStatus,
    Ticket,
)
from .recorder import ComplianceRecorder
from .wsaa import TicketAuthority, WsaaClient, utcnow, validate_certificate
from .wsfe import InvoiceAuthorizationClient

logger = logging.getLogger(__name__)


class FiscalService:
    """
    Punto de entrada del flujo comercial: borrador -> ticket -> CAE -> registro.

    No reintenta nada. Ante un TransientError el llamador puede volver a
    invocar ``authorize``, que vuelve a consultar el último número.
    """

    def __init__(self, configs, sales_points, documents, tickets: TicketAuthority,
                 client: InvoiceAuthorizationClient, recorder: ComplianceRecorder,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.configs = configs
        self.sales_points = sales_points
        self.documents = documents
        self.tickets = tickets
        self.client = client
        self.recorder = recorder
        self.clock = clock

    # ——————————————————————————————————————————————————————————————
    # Configuración
    # ——————————————————————————————————————————————————————————————
    def get_config(self, tenant_id: str) -> FiscalConfig:
        return self.configs.get(tenant_id)

    def save_config(self, tenant_id: str, update: FiscalConfigUpdate) -> FiscalConfig:
        certificate_expires = None
        if update.certificate:
            info = validate_certificate(update.certificate, self.clock())
            if not info.valid:
                raise ConfigurationError(f"Certificado inválido: {info.error}", tenant_id=tenant_id)
            certificate_expires = info.valid_to
        return self.configs.save(tenant_id, update, certificate_expires=certificate_expires)

    def validate_certificate(self, cert_pem: str) -> CertificateInfo:
        return self.tickets.validate_certificate(cert_pem)

    def server_status(self, environment: str) -> ServerStatus:
        return self.client.server_status(environment)

    def test_connection(self, tenant_id: str) -> dict:
        config = self.configs.get(tenant_id)
        if not config.certificate or config.private_key is None or not config.cuit:
            return {
                "success": False,
                "error": "Configuración incompleta. Faltan certificado, clave privada o CUIT.",
            }

        status = self.client.server_status(config.environment.value)
        if not status.all_online:
            return {
                "success": False,
                "error": "Servicios de ARCA no disponibles",
                "details": status.summary(),
            }

        tested_at = self.clock()
        try:
            self.tickets.get_ticket(config)
        except (ConfigurationError, AuthenticationError, ProtocolError) as e:
            self.configs.mark_status(tenant_id, ConfigStatus.ERROR, error=e.message, tested_at=tested_at)
            return {"success": False, "error": e.message}

        self.configs.mark_status(tenant_id, ConfigStatus.ACTIVE, tested_at=tested_at)
        return {
            "success": True,
            "message": "Conexión exitosa con ARCA",
            "server_status": status.summary(),
        }

    def _credentials(self, tenant_id: str) -> Tuple[FiscalConfig, Ticket]:
        config = self.configs.get(tenant_id)
        if config.status == ConfigStatus.ERROR:
            raise ConfigurationError(
                f"Configuración fiscal con error: {config.last_error}. Probá la conexión nuevamente.",
                tenant_id=tenant_id,
            )
        return config, self.tickets.get_ticket(config)

    # ——————————————————————————————————————————————————————————————
    # Puntos de venta
    # ——————————————————————————————————————————————————————————————
    def list_sales_points(self, tenant_id: str) -> List[SalesPoint]:
        self.configs.get(tenant_id)
        return self.sales_points.list(tenant_id)

    def save_sales_point(self, tenant_id: str, point: SalesPoint) -> SalesPoint:
        self.configs.get(tenant_id)
        return self.sales_points.upsert(tenant_id, point)

    def sync_sales_points(self, tenant_id: str) -> List[SalesPoint]:
        config, ticket = self._credentials(tenant_id)
        remote = self.client.list_sales_points(config, ticket)
        logger.info("ARCA informó %d puntos de venta para tenant %s", len(remote), tenant_id)
        return self.sales_points.replace_from_remote(tenant_id, remote)

    def _resolve_sales_point(self, tenant_id: str, draft: InvoiceDraft) -> InvoiceDraft:
        if draft.sales_point is None:
            default = self.sales_points.get_default(tenant_id)
            if default is None:
                raise ConfigurationError("No hay punto de venta configurado", tenant_id=tenant_id)
            draft = draft.model_copy(update={"sales_point": default.number})

        point = self.sales_points.get_active(tenant_id, draft.sales_point)
        if point is None:
            raise ConfigurationError(
                f"Punto de venta {draft.sales_point} no encontrado o no activo", tenant_id=tenant_id
            )
        if point.emission_kind != EmissionKind.CAE:
            raise ConfigurationError(
                f"El punto de venta {draft.sales_point} no emite con CAE", tenant_id=tenant_id
            )
        return draft

    # ——————————————————————————————————————————————————————————————
    # Comprobantes
    # ——————————————————————————————————————————————————————————————
    def document_types(self, tenant_id: str) -> List[dict]:
        config, ticket = self._credentials(tenant_id)
        return self.client.list_document_types(config, ticket)

    def last_authorized(self, tenant_id: str, sales_point: int, document_type: int) -> int:
        config, ticket = self._credentials(tenant_id)
        return self.client.get_last_authorized(config, ticket, sales_point, document_type)

    def consult(self, tenant_id: str, sales_point: int, document_type: int, number: int) -> DocumentSnapshot:
        config, ticket = self._credentials(tenant_id)
        return self.client.consult(config, ticket, sales_point, document_type, number)

    def get_document(self, tenant_id: str, document_id: int) -> Optional[FiscalDocument]:
        return self.documents.get(tenant_id, document_id)

    def authorize(self, tenant_id: str, draft: InvoiceDraft,
                  invoice_id: Optional[str] = None) -> AuthorizationResult:
        """
        Autoriza un borrador. Devuelve el CaeGrant para la factura comercial o
        el rechazo estructurado; en ambos casos queda un FiscalDocument.
        """
        draft = self._resolve_sales_point(tenant_id, draft)
        config, ticket = self._credentials(tenant_id)

        outcome = self.client.request_authorization(config, ticket, draft)
        try:
            return self.recorder.record(config, draft, outcome, invoice_id=invoice_id)
        except Exception as e:
            # Si ARCA ya emitió el CAE hay que dejarlo registrado en el log
            # para no perderlo.
            if isinstance(outcome, Approval):
                logger.critical(
                    "¡FALLO CRÍTICO! Se emitió el CAE pero no se pudo registrar. "
                    "Tenant: %s, comprobante: %s tipo %s, CAE: %s, vto: %s. Error: %s",
                    tenant_id, outcome.full_number, outcome.document_type,
                    outcome.cae, outcome.cae_expires_at, e,
                )
            raise


def build_service(settings: Settings = default_settings) -> FiscalService:
    box = SecretBox(settings.ENCRYPTION_KEY)
    configs = PostgresConfigStore(box)
    locks = AdvisoryLock(get_pool) if settings.LOCK_BACKEND == "postgres" else KeyedLock()
    tickets = TicketAuthority(
        configs,
        WsaaClient(settings),
        safety_margin=datetime.timedelta(minutes=settings.TICKET_SAFETY_MARGIN_MINUTES),
        service=settings.WSAA_SERVICE,
        locks=locks,
    )
    documents = PostgresDocumentRepository()
    return FiscalService(
        configs=configs,
        sales_points=PostgresSalesPointRegistry(),
        documents=documents,
        tickets=tickets,
        client=InvoiceAuthorizationClient(locks, settings),
        recorder=ComplianceRecorder(documents, settings.QR_BASE_URL),
    )
