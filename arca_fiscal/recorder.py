import logging
from typing import Optional, Union
from .errors import RecordConflictError
from .models import (
    Approval,
    AuthorizationResult,
    CaeGrant,
    DocumentStatus,
    DomainRejection,
    FiscalConfig,
    FiscalDocument,
    InvoiceDraft,
    ReprocessedApproval,
)
from .qr import build_qr_payload, build_qr_url

logger = logging.getLogger(__name__)


class ComplianceRecorder:
    """
    Convierte el resultado del protocolo en un registro auditable.

    Cada intento de autorización deja exactamente un FiscalDocument, aprobado
    o rechazado, y ninguno se modifica después. Un mismo número puede
    acumular rechazos, pero una sola autorización. La factura comercial solo
    recibe el CaeGrant; este módulo nunca la toca.
    """

    def __init__(self, repository, qr_base_url: Optional[str] = None):
        self.repository = repository
        self.qr_base_url = qr_base_url

    def qr_url_for(self, config: FiscalConfig, draft: InvoiceDraft, outcome: Approval) -> str:
        payload = build_qr_payload(
            fecha=draft.issue_date,
            cuit=config.cuit,
            pto_vta=outcome.sales_point,
            tipo_cmp=outcome.document_type,
            nro_cmp=outcome.sequence_number,
            importe=draft.total,
            moneda=draft.currency,
            ctz=draft.exchange_rate,
            tipo_doc_rec=draft.receiver_doc_type,
            nro_doc_rec=draft.receiver_doc_number,
            cae=outcome.cae,
        )
        return build_qr_url(payload, self.qr_base_url)

    def record(self, config: FiscalConfig, draft: InvoiceDraft,
               outcome: Union[Approval, DomainRejection],
               invoice_id: Optional[str] = None) -> AuthorizationResult:
        # Un rechazo no consume el número en ARCA: el reintento corregido
        # puede volver a usarlo. Solo un AUTORIZADO es definitivo.
        existing = self.repository.find_by_number(
            config.tenant_id, outcome.sales_point, outcome.document_type, outcome.sequence_number
        )
        if existing is not None and existing.status == DocumentStatus.AUTHORIZED:
            raise RecordConflictError(
                f"Ya existe el comprobante {outcome.full_number} autorizado",
                operation="record", tenant_id=config.tenant_id,
                document_key=(outcome.sales_point, outcome.document_type),
            )

        document = FiscalDocument(
            tenant_id=config.tenant_id,
            invoice_id=invoice_id,
            sales_point=outcome.sales_point,
            document_type=outcome.document_type,
            sequence_number=outcome.sequence_number,
            full_number=outcome.full_number,
            concept=draft.concept,
            receiver_doc_type=draft.receiver_doc_type,
            receiver_doc_number=draft.receiver_doc_number,
            issue_date=draft.issue_date,
            total=draft.total,
            net=draft.net,
            vat=draft.vat,
            exempt=draft.exempt,
            untaxed=draft.untaxed,
            other_taxes=draft.other_taxes,
            currency=draft.currency,
            exchange_rate=draft.exchange_rate,
            observations=outcome.observations,
            raw_response=outcome.raw,
            status=DocumentStatus.REJECTED,
        )

        if isinstance(outcome, DomainRejection):
            document = self.repository.insert(document)
            return AuthorizationResult(status=DocumentStatus.REJECTED, document=document, rejection=outcome)

        document.status = DocumentStatus.AUTHORIZED
        document.cae = outcome.cae
        document.cae_expires_at = outcome.cae_expires_at
        document.reprocessed = outcome.reprocessed
        document.qr_url = self.qr_url_for(config, draft, outcome)
        document = self.repository.insert(document)

        grant = CaeGrant(
            cae=outcome.cae,
            cae_expires_at=outcome.cae_expires_at,
            sequence_number=outcome.sequence_number,
            full_number=outcome.full_number,
            qr_url=document.qr_url,
            document_id=document.id,
            reprocessed=outcome.reprocessed,
            warning=outcome.warning if isinstance(outcome, ReprocessedApproval) else None,
        )
        logger.info("Comprobante %s autorizado, CAE %s (tenant %s)",
                    outcome.full_number, outcome.cae, config.tenant_id)
        return AuthorizationResult(status=DocumentStatus.AUTHORIZED, document=document, grant=grant)
