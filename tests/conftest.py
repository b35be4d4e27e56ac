import datetime
import threading
import time
from datetime import timezone, timedelta
from decimal import Decimal
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from arca_fiscal.errors import RecordConflictError
from arca_fiscal.locks import KeyedLock
from arca_fiscal.models import (
    ConfigStatus,
    DocumentStatus,
    FiscalConfig,
    InvoiceDraft,
    SalesPoint,
    Ticket,
    VatLine,
)
from arca_fiscal.recorder import ComplianceRecorder
from arca_fiscal.service import FiscalService
from arca_fiscal.wsaa import TicketAuthority
from arca_fiscal.wsfe import InvoiceAuthorizationClient

T0 = datetime.datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_credentials(days_valid=365, not_before=None, passphrase=None):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "facturacion"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, "CUIT 20123456789"),
    ])
    not_before = not_before or (T0 - timedelta(days=1))
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=days_valid))
        .sign(key, hashes.SHA256())
    )
    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase else serialization.NoEncryption()
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
    ).decode()
    return cert_pem, key_pem


@pytest.fixture(scope="session")
def credentials():
    return make_credentials()


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


# ——————————————————————————————————————————————————————————————
# Repositorios en memoria
# ——————————————————————————————————————————————————————————————
class MemoryConfigStore:
    def __init__(self):
        self.configs = {}
        self.saved_tickets = []

    def get(self, tenant_id):
        if tenant_id not in self.configs:
            self.configs[tenant_id] = FiscalConfig(tenant_id=tenant_id)
        return self.configs[tenant_id].model_copy(deep=True)

    def put(self, config):
        self.configs[config.tenant_id] = config.model_copy(deep=True)

    def save(self, tenant_id, update, certificate_expires=None):
        data = self.get(tenant_id).model_dump()
        data.update(update.model_dump(exclude_none=True))
        data.update(status=ConfigStatus.PENDING_SETUP, ticket=None, last_error=None)
        if certificate_expires:
            data["certificate_expires"] = certificate_expires
        self.put(FiscalConfig(**data))
        return self.get(tenant_id)

    def save_ticket(self, tenant_id, ticket):
        self.saved_tickets.append(ticket)
        config = self.configs[tenant_id]
        config.ticket = ticket
        config.status = ConfigStatus.ACTIVE
        config.last_error = None

    def mark_status(self, tenant_id, status, error=None, tested_at=None):
        config = self.configs[tenant_id]
        config.status = status
        config.last_error = error
        if tested_at:
            config.last_tested_at = tested_at


class MemorySalesPoints:
    def __init__(self):
        self.points = {}

    def list(self, tenant_id):
        return sorted(self.points.get(tenant_id, {}).values(), key=lambda p: p.number)

    def get_active(self, tenant_id, number):
        point = self.points.get(tenant_id, {}).get(number)
        return point if point and point.active else None

    def get_default(self, tenant_id):
        return next((p for p in self.list(tenant_id) if p.is_default and p.active), None)

    def upsert(self, tenant_id, point):
        points = self.points.setdefault(tenant_id, {})
        if point.is_default:
            for other in points.values():
                other.is_default = False
        points[point.number] = point.model_copy()
        return points[point.number]

    def replace_from_remote(self, tenant_id, remote):
        points = self.points.setdefault(tenant_id, {})
        numbers = {p.number for p in remote}
        for p in remote:
            if p.number in points:
                points[p.number].active = p.active
                points[p.number].emission_kind = p.emission_kind
            else:
                points[p.number] = p.model_copy()
        for number, p in points.items():
            if number not in numbers:
                p.active = False
                p.is_default = False
        return self.list(tenant_id)


class MemoryDocuments:
    def __init__(self):
        self.rows = []
        self._lock = threading.Lock()

    @staticmethod
    def _key(d):
        return d.tenant_id, d.sales_point, d.document_type, d.sequence_number

    def insert(self, document):
        # igual que el índice único parcial: una sola autorización por número
        with self._lock:
            if document.status == DocumentStatus.AUTHORIZED and any(
                d.status == DocumentStatus.AUTHORIZED and self._key(d) == self._key(document)
                for d in self.rows
            ):
                raise RecordConflictError("duplicado")
            stored = document.model_copy(update={"id": len(self.rows) + 1, "created_at": T0})
            self.rows.append(stored)
            return stored

    def find_by_number(self, tenant_id, sales_point, document_type, sequence_number):
        matches = [d for d in self.rows if self._key(d) == (tenant_id, sales_point, document_type, sequence_number)]
        authorized = [d for d in matches if d.status == DocumentStatus.AUTHORIZED]
        if authorized:
            return authorized[0]
        return matches[-1] if matches else None

    def get(self, tenant_id, document_id):
        return next((d for d in self.rows if d.id == document_id and d.tenant_id == tenant_id), None)


# ——————————————————————————————————————————————————————————————
# WSAA y WSFEv1 simulados
# ——————————————————————————————————————————————————————————————
def login_response(token, sign, expires_at):
    return f"""<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<loginTicketResponse version="1.0">
  <header>
    <source>CN=wsaahomo, O=AFIP, C=AR, SERIALNUMBER=CUIT 33693450239</source>
    <destination>SERIALNUMBER=CUIT 20123456789, CN=facturacion</destination>
    <uniqueId>1234567</uniqueId>
    <generationTime>{(expires_at - timedelta(hours=12)).isoformat()}</generationTime>
    <expirationTime>{expires_at.isoformat()}</expirationTime>
  </header>
  <credentials>
    <token>{token}</token>
    <sign>{sign}</sign>
  </credentials>
</loginTicketResponse>"""


class FakeLogin:
    def __init__(self, clock, lifetime=timedelta(hours=12)):
        self.clock = clock
        self.lifetime = lifetime
        self.calls = []
        self.error = None

    def __call__(self, environment, cms):
        self.calls.append((environment, cms))
        if self.error:
            raise self.error
        n = len(self.calls)
        return login_response(f"TOKEN-{n}", f"SIGN-{n}", self.clock() + self.lifetime)


class FakeWsfe:
    """Simula ARCA: es el único árbitro de la numeración."""

    def __init__(self, delay=0.0):
        self.last = {}
        self.delay = delay
        self.submitted = []
        self.scripted = []
        self.documents = {}
        self.points = []
        self.dummy = {"AppServer": "OK", "DbServer": "OK", "AuthServer": "OK"}
        self._lock = threading.Lock()

    def FECompUltimoAutorizado(self, Auth, PtoVta, CbteTipo):
        with self._lock:
            value = self.last.get((PtoVta, CbteTipo), 0)
        if self.delay:
            time.sleep(self.delay)
        return {"PtoVta": PtoVta, "CbteTipo": CbteTipo, "CbteNro": value, "Errors": None, "Events": None}

    def FECAESolicitar(self, Auth, FeCAEReq):
        cab = FeCAEReq["FeCabReq"]
        det = FeCAEReq["FeDetReq"]["FECAEDetRequest"][0]
        key = (cab["PtoVta"], cab["CbteTipo"])
        number = det["CbteDesde"]
        with self._lock:
            self.submitted.append((key, number, det))
            if self.scripted:
                return self.scripted.pop(0)(number, det)
            expected = self.last.get(key, 0) + 1
            if number != expected:
                return rejection(number, [{"Code": 10016, "Msg": "El numero no se corresponde con el proximo a autorizar"}])
            self.last[key] = number
            cae = f"7{number:013d}"
            self.documents[(key, number)] = {**det, "CodAutorizacion": cae, "Resultado": "A"}
            return approval(number, cae)

    def FECompConsultar(self, Auth, FeCompConsReq):
        key = (FeCompConsReq["PtoVta"], FeCompConsReq["CbteTipo"])
        doc = self.documents.get((key, FeCompConsReq["CbteNro"]))
        if doc is None:
            return {"Errors": {"Err": [{"Code": 602, "Msg": "No existen datos en nuestros registros"}]}}
        return {"ResultGet": {
            "PtoVta": key[0], "CbteTipo": key[1], "CbteDesde": doc["CbteDesde"], "CbteHasta": doc["CbteHasta"],
            "CbteFch": doc["CbteFch"], "ImpTotal": doc["ImpTotal"], "DocTipo": doc["DocTipo"],
            "DocNro": doc["DocNro"], "CodAutorizacion": doc["CodAutorizacion"], "FchVto": "20260312",
            "Resultado": "A", "EmisionTipo": "CAE",
        }}

    def FEDummy(self):
        return dict(self.dummy)

    def FEParamGetPtosVenta(self, Auth):
        if not self.points:
            return {"ResultGet": None, "Errors": {"Err": [{"Code": 602, "Msg": "Sin Resultados"}]}}
        return {"ResultGet": {"PtoVenta": self.points}}

    def FEParamGetTiposCbte(self, Auth):
        return {"ResultGet": {"CbteTipo": [{"Id": 1, "Desc": "Factura A"}, {"Id": 6, "Desc": "Factura B"}]}}


def approval(number, cae, reproceso="N", obs=None):
    det = {"Concepto": 1, "CbteDesde": number, "CbteHasta": number, "Resultado": "A",
           "CAE": cae, "CAEFchVto": "20260312", "Observaciones": None}
    if obs:
        det["Observaciones"] = {"Obs": obs}
    return {
        "FeCabResp": {"Resultado": "A", "Reproceso": reproceso, "CantReg": 1},
        "FeDetResp": {"FECAEDetResponse": [det]},
        "Errors": None,
    }


def rejection(number, obs):
    return {
        "FeCabResp": {"Resultado": "R", "Reproceso": "N", "CantReg": 1},
        "FeDetResp": {"FECAEDetResponse": [{
            "Concepto": 1, "CbteDesde": number, "CbteHasta": number, "Resultado": "R",
            "CAE": "", "CAEFchVto": "", "Observaciones": {"Obs": obs},
        }]},
        "Errors": None,
    }


@pytest.fixture
def wsfe():
    return FakeWsfe()


@pytest.fixture
def active_config(credentials, clock):
    cert_pem, key_pem = credentials
    return FiscalConfig(
        tenant_id="tenant-1",
        cuit="20123456789",
        certificate=cert_pem,
        private_key=key_pem,
        ticket=Ticket(token="TOKEN", sign="SIGN", expires_at=clock() + timedelta(hours=11)),
        status=ConfigStatus.ACTIVE,
    )


@pytest.fixture
def ticket(active_config):
    return active_config.ticket


@pytest.fixture
def client(wsfe):
    return InvoiceAuthorizationClient(KeyedLock(), service_factory=lambda environment: wsfe)


def make_draft(**overrides):
    data = dict(
        sales_point=3,
        document_type=6,
        receiver_doc_type=96,
        receiver_doc_number="30.111.222",
        issue_date=datetime.date(2026, 3, 2),
        total=Decimal("121.00"),
        net=Decimal("100.00"),
        vat=Decimal("21.00"),
        vat_lines=[VatLine(rate=Decimal("21"), base=Decimal("100.00"), amount=Decimal("21.00"))],
    )
    data.update(overrides)
    return InvoiceDraft(**data)


@pytest.fixture
def draft():
    return make_draft()


@pytest.fixture
def stores(active_config):
    configs = MemoryConfigStore()
    configs.put(active_config)
    points = MemorySalesPoints()
    points.upsert("tenant-1", SalesPoint(number=3, is_default=True))
    points.upsert("tenant-1", SalesPoint(number=1))
    return configs, points, MemoryDocuments()


@pytest.fixture
def service(stores, wsfe, clock, client):
    configs, points, documents = stores
    login = FakeLogin(clock)
    tickets = TicketAuthority(configs, login, clock=clock)
    svc = FiscalService(
        configs=configs,
        sales_points=points,
        documents=documents,
        tickets=tickets,
        client=client,
        recorder=ComplianceRecorder(documents),
        clock=clock,
    )
    svc.login = login
    return svc
