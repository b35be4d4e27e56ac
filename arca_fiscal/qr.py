import base64
import json
from datetime import date
from decimal import Decimal
from io import BytesIO
from typing import Optional
import qrcode
from .config import settings
from .models import only_digits

QR_VERSION = 1


def build_qr_payload(
    fecha: date,
    cuit: str,
    pto_vta: int,
    tipo_cmp: int,
    nro_cmp: int,
    importe: Decimal,
    moneda: str,
    ctz: Decimal,
    tipo_doc_rec: int,
    nro_doc_rec: str,
    cae: str,
) -> dict:
    """Datos del QR de comprobantes electrónicos (RG 4291), codAut = CAE."""
    return {
        "ver": QR_VERSION,
        "fecha": fecha.strftime("%Y-%m-%d"),
        "cuit": int(only_digits(cuit)),
        "ptoVta": pto_vta,
        "tipoCmp": tipo_cmp,
        "nroCmp": nro_cmp,
        "importe": float(f"{importe:.2f}"),
        "moneda": moneda,
        "ctz": float(ctz),
        "tipoDocRec": tipo_doc_rec,
        "nroDocRec": int(only_digits(nro_doc_rec)),
        "tipoCodAut": "E",
        "codAut": cae,
    }


def build_qr_url(payload: dict, base_url: Optional[str] = None) -> str:
    encoded = base64.b64encode(json.dumps(payload).encode()).decode()
    return (base_url or settings.QR_BASE_URL) + encoded


def decode_qr_url(url: str) -> dict:
    _, _, encoded = url.partition("?p=")
    return json.loads(base64.b64decode(encoded))


def qr_png(url: str) -> bytes:
    img = qrcode.make(url)
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
