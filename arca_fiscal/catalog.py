# Tablas paramétricas de WSFEv1 que no cambian entre ambientes.
from decimal import Decimal

DOCUMENT_TYPES = {
    1: "Factura A",
    2: "Nota de Débito A",
    3: "Nota de Crédito A",
    6: "Factura B",
    7: "Nota de Débito B",
    8: "Nota de Crédito B",
    11: "Factura C",
    12: "Nota de Débito C",
    13: "Nota de Crédito C",
    51: "Factura M",
    52: "Nota de Débito M",
    53: "Nota de Crédito M",
    201: "Factura de Crédito Electrónica MiPyMEs (FCE) A",
    202: "Nota de Débito Electrónica MiPyMEs (FCE) A",
    203: "Nota de Crédito Electrónica MiPyMEs (FCE) A",
    206: "Factura de Crédito Electrónica MiPyMEs (FCE) B",
    207: "Nota de Débito Electrónica MiPyMEs (FCE) B",
    208: "Nota de Crédito Electrónica MiPyMEs (FCE) B",
    211: "Factura de Crédito Electrónica MiPyMEs (FCE) C",
    212: "Nota de Débito Electrónica MiPyMEs (FCE) C",
    213: "Nota de Crédito Electrónica MiPyMEs (FCE) C",
}

# Notas de crédito y débito: admiten CbtesAsoc
NOTE_TYPES = frozenset({2, 3, 7, 8, 12, 13, 52, 53, 202, 203, 207, 208, 212, 213})

RECEIVER_DOC_TYPES = {
    80: "CUIT",
    86: "CUIL",
    87: "CDI",
    89: "LE",
    90: "LC",
    91: "CI Extranjera",
    92: "En trámite",
    93: "Acta Nacimiento",
    94: "Pasaporte",
    95: "CI Bs. As. RNP",
    96: "DNI",
    99: "Sin identificar/consumidor final",
}

# alícuota -> Id de AlicIva
VAT_RATES = {
    Decimal("0"): 3,
    Decimal("2.5"): 9,
    Decimal("5"): 8,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

CONCEPTS = {
    1: "Productos",
    2: "Servicios",
    3: "Productos y Servicios",
}

LOCAL_CURRENCY = "PES"


def vat_rate_id(rate: Decimal) -> int:
    try:
        return VAT_RATES[Decimal(rate)]
    except KeyError:
        raise ValueError(f"Alícuota de IVA no admitida: {rate}") from None
