import datetime
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional
import requests
from lxml import etree
from zeep import Client
from zeep.exceptions import Fault, TransportError
from zeep.helpers import serialize_object
from .config import Settings, settings as default_settings
from .errors import ConfigurationError, ProtocolError, TransientError
from .models import (
    Approval,
    DocumentSnapshot,
    DomainRejection,
    EmissionKind,
    FiscalConfig,
    InvoiceDraft,
    Observation,
    ReprocessedApproval,
    SalesPoint,
    ServerStatus,
    Ticket,
    full_number,
    only_digits,
)
from .wsaa import build_transport

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
# FEParamGetPtosVenta responde 602 cuando el CUIT no tiene puntos de venta
NO_RESULTS_CODE = 602


def as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def format_date(value: Optional[datetime.date]) -> Optional[str]:
    return value.strftime("%Y%m%d") if value else None


def parse_date(value: Optional[str]) -> Optional[datetime.date]:
    """Fechas de ARCA en formato compacto YYYYMMDD."""
    if not value:
        return None
    try:
        return datetime.datetime.strptime(str(value).strip(), "%Y%m%d").date()
    except ValueError as e:
        raise ProtocolError(f"Fecha de ARCA inválida: {value}") from e


def amount(value: Decimal) -> float:
    return float(Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def build_auth(ticket: Ticket, cuit: str) -> dict:
    return {
        "Token": ticket.token,
        "Sign": ticket.sign,
        "Cuit": int(only_digits(cuit)),
    }


def build_detail(draft: InvoiceDraft, number: int) -> dict:
    """Arma un FECAEDetRequest para un único comprobante."""
    detalle = {
        "Concepto": draft.concept,
        "DocTipo": draft.receiver_doc_type,
        "DocNro": int(draft.receiver_doc_number),
        "CbteDesde": number,
        "CbteHasta": number,
        "CbteFch": format_date(draft.issue_date),
        "ImpTotal": amount(draft.total),
        "ImpTotConc": amount(draft.untaxed),
        "ImpNeto": amount(draft.net),
        "ImpOpEx": amount(draft.exempt),
        "ImpIVA": amount(draft.vat),
        "ImpTrib": amount(draft.other_taxes),
        "MonId": draft.currency,
        "MonCotiz": float(draft.exchange_rate),
    }

    # Servicios (concepto 2 o 3): período y vencimiento de pago obligatorios
    if draft.includes_services:
        detalle["FchServDesde"] = format_date(draft.service_from or draft.issue_date)
        detalle["FchServHasta"] = format_date(draft.service_to or draft.issue_date)
        detalle["FchVtoPago"] = format_date(draft.payment_due or draft.issue_date)

    if draft.vat_lines:
        detalle["Iva"] = {
            "AlicIva": [
                {"Id": line.afip_id, "BaseImp": amount(line.base), "Importe": amount(line.amount)}
                for line in draft.vat_lines
            ]
        }

    if draft.other_tax_lines:
        detalle["Tributos"] = {
            "Tributo": [
                {
                    "Id": t.id,
                    "Desc": t.description,
                    "BaseImp": amount(t.base),
                    "Alic": amount(t.rate),
                    "Importe": amount(t.amount),
                }
                for t in draft.other_tax_lines
            ]
        }

    if draft.associated_documents:
        asociados = []
        for doc in draft.associated_documents:
            asoc = {"Tipo": doc.document_type, "PtoVta": doc.sales_point, "Nro": doc.number}
            if doc.cuit:
                asoc["Cuit"] = doc.cuit
            if doc.issue_date:
                asoc["CbteFch"] = format_date(doc.issue_date)
            asociados.append(asoc)
        detalle["CbtesAsoc"] = {"CbteAsoc": asociados}

    return detalle


def remote_errors(data: Dict[str, Any]) -> List[dict]:
    return as_list((data.get("Errors") or {}).get("Err"))


def check_errors(data: Dict[str, Any], operation: str, **context) -> None:
    errors = remote_errors(data)
    if errors:
        detail = "; ".join(f"[{e.get('Code')}] {e.get('Msg')}" for e in errors)
        raise ProtocolError(
            f"Error ARCA en {operation}: {detail}",
            operation=operation,
            code=str(errors[0].get("Code")),
            **context,
        )


def parse_observations(det: Dict[str, Any]) -> List[Observation]:
    return [
        Observation(code=int(o.get("Code")), message=str(o.get("Msg") or ""))
        for o in as_list((det.get("Observaciones") or {}).get("Obs"))
    ]


def parse_cae_response(data: Dict[str, Any], sales_point: int, document_type: int,
                       number: int, tenant_id: Optional[str] = None):
    """
    Interpreta la respuesta de FECAESolicitar para un lote de tamaño 1.
    Devuelve Approval, ReprocessedApproval o DomainRejection.
    """
    context = {"tenant_id": tenant_id, "document_key": (sales_point, document_type)}
    check_errors(data, "FECAESolicitar", **context)

    cab = data.get("FeCabResp") or {}
    dets = as_list((data.get("FeDetResp") or {}).get("FECAEDetResponse"))
    if not dets:
        raise ProtocolError("Respuesta vacía de ARCA", operation="FECAESolicitar", **context)
    det = dets[0]

    returned = det.get("CbteDesde")
    if returned is not None and int(returned) != number:
        raise ProtocolError(
            f"ARCA respondió por el comprobante {returned} y se envió el {number}",
            operation="FECAESolicitar", **context,
        )

    common = {
        "sales_point": sales_point,
        "document_type": document_type,
        "sequence_number": number,
        "full_number": full_number(sales_point, number),
        "observations": parse_observations(det),
        "raw": data,
    }
    resultado = det.get("Resultado")

    if resultado == "A":
        cae = det.get("CAE")
        cae_vto = parse_date(det.get("CAEFchVto"))
        if not cae or cae_vto is None:
            raise ProtocolError("Comprobante aprobado sin CAE", operation="FECAESolicitar", **context)
        if cab.get("Reproceso") == "S":
            logger.warning("ARCA reprocesó el comprobante %s (tenant %s)", common["full_number"], tenant_id)
            return ReprocessedApproval(cae=str(cae), cae_expires_at=cae_vto, **common)
        return Approval(cae=str(cae), cae_expires_at=cae_vto, **common)

    if resultado == "R":
        rejection = DomainRejection(**common)
        logger.warning("%s (tenant %s, %s)", rejection.describe(), tenant_id, common["full_number"])
        return rejection

    raise ProtocolError(f"Resultado inesperado de ARCA: {resultado!r}", operation="FECAESolicitar", **context)


class InvoiceAuthorizationClient:
    """
    Cliente WSFEv1. Un comprobante por llamada; la consulta del último número
    y el envío corren dentro de la sección exclusiva de su clave de numeración.
    """

    def __init__(self, locks, settings: Settings = default_settings,
                 service_factory: Optional[Callable[[str], Any]] = None):
        self.locks = locks
        self.settings = settings
        self.service_factory = service_factory or self._zeep_service
        self._clients = {}

    def _zeep_service(self, environment: str):
        if environment not in self._clients:
            transport = build_transport(environment, self.settings.HTTP_TIMEOUT)
            self._clients[environment] = Client(
                wsdl=self.settings.wsfe_wsdl(environment), transport=transport
            )
        return self._clients[environment].service

    def _call(self, environment: str, operation: str, context: dict, **params) -> Dict[str, Any]:
        try:
            result = getattr(self.service_factory(environment), operation)(**params)
        except Fault as e:
            raise ProtocolError(f"SOAP Fault en {operation}: {e.message}", operation=operation,
                                code=getattr(e, "code", None), **context) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout, TransportError) as e:
            raise TransientError(f"ARCA no disponible en {operation}: {e}", operation=operation,
                                 **context) from e
        except etree.XMLSyntaxError as e:
            raise ProtocolError(f"Respuesta ilegible en {operation}: {e}", operation=operation,
                                **context) from e

        data = serialize_object(result, dict)
        if not isinstance(data, dict):
            raise ProtocolError(f"Respuesta vacía de ARCA en {operation}", operation=operation, **context)
        return data

    # ——————————————————————————————————————————————————————————————
    def get_last_authorized(self, config: FiscalConfig, ticket: Ticket,
                            sales_point: int, document_type: int) -> int:
        context = {"tenant_id": config.tenant_id, "document_key": (sales_point, document_type)}
        data = self._call(
            config.environment.value, "FECompUltimoAutorizado", context,
            Auth=build_auth(ticket, config.cuit),
            PtoVta=sales_point,
            CbteTipo=document_type,
        )
        check_errors(data, "FECompUltimoAutorizado", **context)
        return int(data.get("CbteNro") or 0)

    def request_authorization(self, config: FiscalConfig, ticket: Ticket, draft: InvoiceDraft):
        if draft.sales_point is None:
            raise ConfigurationError("Punto de venta requerido", operation="FECAESolicitar",
                                     tenant_id=config.tenant_id)
        sales_point = draft.sales_point
        document_type = draft.document_type
        context = {"tenant_id": config.tenant_id, "document_key": (sales_point, document_type)}

        with self.locks.hold((config.tenant_id, sales_point, document_type)):
            last = self.get_last_authorized(config, ticket, sales_point, document_type)
            number = last + 1
            detalle = build_detail(draft, number)
            logger.info(
                "Solicitando CAE %s tipo %s (tenant %s)",
                full_number(sales_point, number), document_type, config.tenant_id,
            )
            # Si ARCA aprueba, el número queda consumido aunque se pierda la respuesta
            data = self._call(
                config.environment.value, "FECAESolicitar", context,
                Auth=build_auth(ticket, config.cuit),
                FeCAEReq={
                    "FeCabReq": {
                        "CantReg": 1,
                        "PtoVta": sales_point,
                        "CbteTipo": document_type,
                    },
                    "FeDetReq": {"FECAEDetRequest": [detalle]},
                },
            )

        return parse_cae_response(data, sales_point, document_type, number, config.tenant_id)

    def consult(self, config: FiscalConfig, ticket: Ticket, sales_point: int,
                document_type: int, number: int) -> DocumentSnapshot:
        context = {"tenant_id": config.tenant_id, "document_key": (sales_point, document_type)}
        data = self._call(
            config.environment.value, "FECompConsultar", context,
            Auth=build_auth(ticket, config.cuit),
            FeCompConsReq={"CbteTipo": document_type, "CbteNro": number, "PtoVta": sales_point},
        )
        check_errors(data, "FECompConsultar", **context)
        result = data.get("ResultGet") or {}
        return DocumentSnapshot(
            sales_point=int(result.get("PtoVta") or sales_point),
            document_type=int(result.get("CbteTipo") or document_type),
            number=int(result.get("CbteDesde") or number),
            result=result.get("Resultado"),
            cae=result.get("CodAutorizacion"),
            cae_expires_at=parse_date(result.get("FchVto")),
            issue_date=parse_date(result.get("CbteFch")),
            total=result.get("ImpTotal"),
            receiver_doc_type=result.get("DocTipo"),
            receiver_doc_number=str(result["DocNro"]) if result.get("DocNro") is not None else None,
            raw=result,
        )

    def server_status(self, environment: str) -> ServerStatus:
        data = self._call(environment, "FEDummy", {})
        return ServerStatus(
            app_server=data.get("AppServer"),
            db_server=data.get("DbServer"),
            auth_server=data.get("AuthServer"),
        )

    def list_sales_points(self, config: FiscalConfig, ticket: Ticket) -> List[SalesPoint]:
        context = {"tenant_id": config.tenant_id}
        data = self._call(config.environment.value, "FEParamGetPtosVenta", context,
                          Auth=build_auth(ticket, config.cuit))
        if any(int(e.get("Code") or 0) == NO_RESULTS_CODE for e in remote_errors(data)):
            return []
        check_errors(data, "FEParamGetPtosVenta", **context)

        puntos = []
        for pv in as_list((data.get("ResultGet") or {}).get("PtoVenta")):
            nro = int(pv.get("Nro"))
            puntos.append(SalesPoint(
                number=nro,
                name=f"Punto de Venta {nro}",
                emission_kind=EmissionKind.CAEA if "CAEA" in str(pv.get("EmisionTipo") or "").upper()
                else EmissionKind.CAE,
                active=pv.get("Bloqueado") == "N",
            ))
        return puntos

    def list_document_types(self, config: FiscalConfig, ticket: Ticket) -> List[dict]:
        context = {"tenant_id": config.tenant_id}
        data = self._call(config.environment.value, "FEParamGetTiposCbte", context,
                          Auth=build_auth(ticket, config.cuit))
        check_errors(data, "FEParamGetTiposCbte", **context)
        return [
            {"id": int(t.get("Id")), "name": t.get("Desc")}
            for t in as_list((data.get("ResultGet") or {}).get("CbteTipo"))
        ]
