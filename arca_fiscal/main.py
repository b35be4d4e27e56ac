import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from .catalog import CONCEPTS, DOCUMENT_TYPES, RECEIVER_DOC_TYPES, VAT_RATES
from .config import settings
from .db import connect_to_db, close_db_connection
from .errors import (
    AuthenticationError,
    ConfigurationError,
    FiscalError,
    ProtocolError,
    RecordConflictError,
    TransientError,
)
from .models import DocumentStatus, Environment, FiscalConfigUpdate, InvoiceDraft, SalesPoint
from .qr import qr_png
from .service import FiscalService, build_service

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ConfigurationError: 400,
    AuthenticationError: 401,
    RecordConflictError: 409,
    ProtocolError: 502,
    TransientError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Se ejecuta al iniciar la aplicación
    logger.info("Iniciando aplicación y conectando a la base de datos...")
    connect_to_db()
    app.state.fiscal = build_service(settings)
    yield
    # Se ejecuta al apagar la aplicación
    logger.info("Cerrando conexiones a la base de datos...")
    close_db_connection()


app = FastAPI(
    title="API ARCA Fiscal",
    version="1.0",
    description="Autorización de comprobantes electrónicos ARCA/AFIP (CAE) por tenant",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(','),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(FiscalError)
async def fiscal_error_handler(request: Request, exc: FiscalError):
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    if status_code >= 500:
        logger.error("Error fiscal en %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"success": False, **exc.to_dict()})


def get_service(request: Request) -> FiscalService:
    return request.app.state.fiscal


def get_tenant(x_tenant_id: str = Header(...)) -> str:
    return x_tenant_id


class CertificateRequest(BaseModel):
    certificate: str


class ConsultRequest(BaseModel):
    sales_point: int
    document_type: int
    number: int


class AuthorizeRequest(InvoiceDraft):
    invoice_id: Optional[str] = None


@app.get("/health", summary="Estado de salud del servicio")
def health_check():
    """Endpoint para verificar que la API está viva."""
    return {"status": "ok"}


# ——————————————————————————————————————————————————————————————
# Configuración fiscal
# ——————————————————————————————————————————————————————————————
@app.get("/fiscal/config", summary="Configuración fiscal del tenant")
def get_config(tenant: str = Depends(get_tenant), service: FiscalService = Depends(get_service)):
    config = service.get_config(tenant)
    return {"success": True, "data": config.public_view()}


@app.post("/fiscal/config", summary="Guarda certificado, clave, CUIT y ambiente")
def save_config(data: FiscalConfigUpdate, tenant: str = Depends(get_tenant),
                service: FiscalService = Depends(get_service)):
    config = service.save_config(tenant, data)
    return {
        "success": True,
        "message": "Configuración guardada. Probá la conexión para verificar.",
        "data": config.public_view(),
    }


@app.post("/fiscal/validate-certificate", summary="Valida un certificado PEM")
def validate_certificate(data: CertificateRequest, service: FiscalService = Depends(get_service)):
    return {"success": True, "data": service.validate_certificate(data.certificate)}


@app.post("/fiscal/test-connection", summary="Prueba la conexión con ARCA")
def test_connection(tenant: str = Depends(get_tenant), service: FiscalService = Depends(get_service)):
    return service.test_connection(tenant)


@app.get("/fiscal/server-status", summary="Estado de los servidores de ARCA")
def server_status(environment: Environment = Environment.TEST,
                  service: FiscalService = Depends(get_service)):
    return {"success": True, "data": service.server_status(environment.value).summary()}


# ——————————————————————————————————————————————————————————————
# Puntos de venta
# ——————————————————————————————————————————————————————————————
@app.get("/fiscal/puntos-venta", summary="Puntos de venta configurados")
def list_sales_points(tenant: str = Depends(get_tenant), service: FiscalService = Depends(get_service)):
    return {"success": True, "data": service.list_sales_points(tenant)}


@app.post("/fiscal/puntos-venta", summary="Crea o actualiza un punto de venta")
def save_sales_point(point: SalesPoint, tenant: str = Depends(get_tenant),
                     service: FiscalService = Depends(get_service)):
    return {"success": True, "data": service.save_sales_point(tenant, point)}


@app.post("/fiscal/puntos-venta/sync", summary="Sincroniza puntos de venta desde ARCA")
def sync_sales_points(tenant: str = Depends(get_tenant), service: FiscalService = Depends(get_service)):
    puntos = service.sync_sales_points(tenant)
    return {
        "success": True,
        "message": f"{len(puntos)} puntos de venta sincronizados",
        "data": puntos,
    }


# ——————————————————————————————————————————————————————————————
# Tablas paramétricas
# ——————————————————————————————————————————————————————————————
@app.get("/fiscal/tipos-comprobante")
def document_types():
    return {"success": True, "data": [{"id": k, "nombre": v} for k, v in DOCUMENT_TYPES.items()]}


@app.get("/fiscal/tipos-comprobante/arca", summary="Tipos de comprobante habilitados según ARCA")
def remote_document_types(tenant: str = Depends(get_tenant), service: FiscalService = Depends(get_service)):
    return {"success": True, "data": service.document_types(tenant)}


@app.get("/fiscal/tipos-documento")
def receiver_doc_types():
    return {"success": True, "data": [{"id": k, "nombre": v} for k, v in RECEIVER_DOC_TYPES.items()]}


@app.get("/fiscal/alicuotas-iva")
def vat_rates():
    return {
        "success": True,
        "data": [{"id": v, "valor": float(k), "descripcion": f"IVA {k}%"} for k, v in VAT_RATES.items()],
    }


@app.get("/fiscal/conceptos")
def concepts():
    return {"success": True, "data": [{"id": k, "nombre": v} for k, v in CONCEPTS.items()]}


# ——————————————————————————————————————————————————————————————
# Comprobantes
# ——————————————————————————————————————————————————————————————
@app.get("/fiscal/ultimo-autorizado", summary="Último comprobante autorizado")
def last_authorized(punto_venta: int, tipo_comprobante: int, tenant: str = Depends(get_tenant),
                    service: FiscalService = Depends(get_service)):
    ultimo = service.last_authorized(tenant, punto_venta, tipo_comprobante)
    return {"success": True, "data": {"ultimo_autorizado": ultimo, "siguiente": ultimo + 1}}


@app.post("/fiscal/emitir", summary="Solicita el CAE de un comprobante")
def authorize(data: AuthorizeRequest, tenant: str = Depends(get_tenant),
              service: FiscalService = Depends(get_service)):
    draft = InvoiceDraft(**data.model_dump(exclude={"invoice_id"}))
    result = service.authorize(tenant, draft, invoice_id=data.invoice_id)

    if result.status == DocumentStatus.REJECTED:
        # Se muestran los códigos exactos de ARCA, no un error genérico
        rejection = result.rejection
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "status": result.status.value,
                "error": rejection.describe(),
                "document_id": result.document.id,
                "sequence_number": rejection.sequence_number,
                "full_number": rejection.full_number,
                "observations": [o.model_dump() for o in rejection.observations],
            },
        )

    return {
        "success": True,
        "status": result.status.value,
        "message": result.grant.warning or "Comprobante autorizado",
        "data": result.grant.model_dump(mode="json"),
    }


@app.get("/fiscal/comprobantes/{document_id}", summary="Detalle de un comprobante fiscal")
def get_document(document_id: int, tenant: str = Depends(get_tenant),
                 service: FiscalService = Depends(get_service)):
    document = service.get_document(tenant, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Comprobante no encontrado")
    return {"success": True, "data": document.model_dump(mode="json", exclude={"raw_response"})}


@app.get("/fiscal/comprobantes/{document_id}/qr.png", summary="QR del comprobante autorizado")
def get_document_qr(document_id: int, tenant: str = Depends(get_tenant),
                    service: FiscalService = Depends(get_service)):
    document = service.get_document(tenant, document_id)
    if document is None or not document.qr_url:
        raise HTTPException(status_code=404, detail="QR no disponible")
    return Response(content=qr_png(document.qr_url), media_type="image/png")


@app.post("/fiscal/consultar", summary="Consulta un comprobante en ARCA")
def consult(data: ConsultRequest, tenant: str = Depends(get_tenant),
            service: FiscalService = Depends(get_service)):
    snapshot = service.consult(tenant, data.sales_point, data.document_type, data.number)
    return {"success": True, "data": snapshot.model_dump(mode="json")}
