import base64
import datetime
import logging
import ssl
from datetime import timezone
from typing import Callable, Optional
import requests
from lxml import etree
from zeep import Client
from zeep.exceptions import Fault, TransportError
from zeep.transports import Transport
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.poolmanager import PoolManager
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.serialization import pkcs7
from .config import Settings, settings as default_settings
from .errors import AuthenticationError, ConfigurationError, ProtocolError, TransientError
from .locks import KeyedLock
from .models import CertificateInfo, ConfigStatus, FiscalConfig, Ticket

logger = logging.getLogger(__name__)

# Fault de WSAA cuando el certificado ya tiene un ticket vigente
ALREADY_AUTHENTICATED = "alreadyAuthenticated"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(timezone.utc)


# ——————————————————————————————————————————————————————————————
# Adapter para inyectar nuestro SSLContext en urllib3 (requests)
# ——————————————————————————————————————————————————————————————
class TLSAdapter(HTTPAdapter):
    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False):
        self.poolmanager = PoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            ssl_context=self.ssl_context
        )


def build_ssl_context(environment: str) -> ssl.SSLContext:
    """
    Crea un SSLContext. En homologación baja el nivel a SECLEVEL=1
    para permitir DHE-1024; en PROD deja el contexto por defecto.
    """
    ctx = ssl.create_default_context()
    if environment != "PROD":
        ctx.set_ciphers("DEFAULT@SECLEVEL=1")
    return ctx


def build_transport(environment: str, timeout: int) -> Transport:
    session = Session()
    session.verify = True
    session.mount("https://", TLSAdapter(build_ssl_context(environment)))
    return Transport(session=session, timeout=timeout, operation_timeout=timeout)


# ——————————————————————————————————————————————————————————————
# Ticket de Requerimiento de Acceso (TRA)
# ——————————————————————————————————————————————————————————————
def create_tra(service: str, now: Optional[datetime.datetime] = None) -> bytes:
    """
    Crea el XML de loginTicketRequest para WSAA:
      - uniqueId: epoch UTC en segundos
      - generationTime: ahora - 10 minutos (tolera desfasaje de reloj)
      - expirationTime: ahora + 10 minutos
      - service: nombre del servicio (ej. 'wsfe')
    """
    now_utc = (now or utcnow()).astimezone(timezone.utc).replace(microsecond=0)
    gen_time = now_utc - datetime.timedelta(minutes=10)
    exp_time = now_utc + datetime.timedelta(minutes=10)

    tra = etree.Element("loginTicketRequest", version="1.0")
    header = etree.SubElement(tra, "header")
    etree.SubElement(header, "uniqueId").text = str(int(now_utc.timestamp()))
    etree.SubElement(header, "generationTime").text = gen_time.isoformat()
    etree.SubElement(header, "expirationTime").text = exp_time.isoformat()
    etree.SubElement(tra, "service").text = service

    return etree.tostring(
        tra,
        pretty_print=True,
        xml_declaration=True,
        encoding="UTF-8"
    )


def load_credentials(config: FiscalConfig):
    """
    Carga certificado y clave privada del tenant.
    Cualquier problema es de configuración: no se llama a WSAA.
    """
    if not config.certificate or config.private_key is None:
        raise ConfigurationError(
            "Certificado o clave privada no configurados",
            operation="loginCms", tenant_id=config.tenant_id,
        )
    if not config.cuit:
        raise ConfigurationError("CUIT no configurado", operation="loginCms", tenant_id=config.tenant_id)

    try:
        cert = x509.load_pem_x509_certificate(config.certificate.encode())
    except ValueError as e:
        raise ConfigurationError(
            f"Certificado ilegible: {e}", operation="loginCms", tenant_id=config.tenant_id
        ) from e

    password = None
    if config.key_passphrase is not None and config.key_passphrase.get_secret_value():
        password = config.key_passphrase.get_secret_value().encode()
    try:
        key = serialization.load_pem_private_key(
            config.private_key.get_secret_value().encode(), password=password
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigurationError(
            f"No se pudo leer la clave privada: {e}", operation="loginCms", tenant_id=config.tenant_id
        ) from e

    pub_format = serialization.PublicFormat.SubjectPublicKeyInfo
    if cert.public_key().public_bytes(serialization.Encoding.DER, pub_format) != \
            key.public_key().public_bytes(serialization.Encoding.DER, pub_format):
        raise ConfigurationError(
            "La clave privada no corresponde al certificado",
            operation="loginCms", tenant_id=config.tenant_id,
        )
    return cert, key


def sign_tra(tra_xml: bytes, cert, key) -> str:
    """
    Firma el TRA como CMS SignedData (SHA-256, contenido embebido,
    certificado del firmante incluido) y devuelve el DER en base64,
    que es lo que espera loginCms.
    """
    signed_data = pkcs7.PKCS7SignatureBuilder().set_data(tra_xml).add_signer(
        cert, key, hashes.SHA256()
    ).sign(
        serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary]
    )
    return base64.b64encode(signed_data).decode("ascii")


def validate_certificate(cert_pem: str, now: Optional[datetime.datetime] = None) -> CertificateInfo:
    """Inspección de solo lectura, pensada para el alta del tenant."""
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode())
    except (ValueError, TypeError, AttributeError) as e:
        return CertificateInfo(valid=False, error=str(e) or "Certificado ilegible")

    now = now or utcnow()
    valid_to = cert.not_valid_after_utc
    return CertificateInfo(
        valid=True,
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        valid_from=cert.not_valid_before_utc,
        valid_to=valid_to,
        serial_number=format(cert.serial_number, "x"),
        is_expired=now > valid_to,
        days_to_expire=(valid_to - now).days,
    )


def parse_login_response(response: str) -> Ticket:
    try:
        xml = etree.fromstring(response.encode("utf-8"))
    except (etree.XMLSyntaxError, AttributeError) as e:
        raise ProtocolError(f"Respuesta de WSAA ilegible: {e}", operation="loginCms") from e

    token = xml.findtext(".//token")
    sign = xml.findtext(".//sign")
    if not token or not sign:
        raise AuthenticationError("WSAA no devolvió token o sign", operation="loginCms")
    expiration = xml.findtext(".//expirationTime")
    if not expiration:
        raise ProtocolError("WSAA no devolvió expirationTime", operation="loginCms")

    try:
        expires_at = datetime.datetime.fromisoformat(expiration.strip())
    except ValueError as e:
        raise ProtocolError(f"expirationTime inválido: {expiration}", operation="loginCms") from e
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return Ticket(token=token, sign=sign, expires_at=expires_at)


# ——————————————————————————————————————————————————————————————
class WsaaClient:
    """Llamada a WSAA.loginCms para el ambiente del tenant."""

    def __init__(self, settings: Settings = default_settings, client_factory: Callable = Client):
        self.settings = settings
        self.client_factory = client_factory
        self._clients = {}

    def _client(self, environment: str):
        if environment not in self._clients:
            transport = build_transport(environment, self.settings.HTTP_TIMEOUT)
            self._clients[environment] = self.client_factory(
                wsdl=self.settings.wsaa_wsdl(environment), transport=transport
            )
        return self._clients[environment]

    def __call__(self, environment: str, cms: str) -> str:
        try:
            return self._client(environment).service.loginCms(cms)
        except Fault as e:
            raise AuthenticationError(f"WSAA rechazó el ticket: {e.message}", operation="loginCms",
                                      code=getattr(e, "code", None)) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout, TransportError) as e:
            raise TransientError(f"WSAA no disponible: {e}", operation="loginCms") from e


class TicketAuthority:
    """
    Mantiene el ticket de acceso (token + sign) de cada tenant.

    El ticket cacheado viaja en ``FiscalConfig.ticket`` y se persiste con
    ``store.save_ticket``; no hay estado global. Si dos pedidos renuevan a la
    vez gana la última escritura, y ninguno presenta un ticket vencido.
    """

    def __init__(self, store, login: Callable[[str, str], str], *,
                 clock: Callable[[], datetime.datetime] = utcnow,
                 safety_margin: Optional[datetime.timedelta] = None,
                 service: Optional[str] = None,
                 locks=None):
        self.store = store
        self.login = login
        self.clock = clock
        self.safety_margin = safety_margin or datetime.timedelta(
            minutes=default_settings.TICKET_SAFETY_MARGIN_MINUTES
        )
        self.service = service or default_settings.WSAA_SERVICE
        self.locks = locks or KeyedLock()

    def _adopt(self, config: FiscalConfig, ticket: Ticket) -> Ticket:
        config.ticket = ticket
        config.status = ConfigStatus.ACTIVE
        config.last_error = None
        return ticket

    def _stored_ticket(self, tenant_id: str, now: datetime.datetime) -> Optional[Ticket]:
        ticket = self.store.get(tenant_id).ticket
        if ticket is not None and ticket.is_usable(now, self.safety_margin):
            return ticket
        return None

    def get_ticket(self, config: FiscalConfig) -> Ticket:
        now = self.clock()
        if config.ticket is not None and config.ticket.is_usable(now, self.safety_margin):
            return config.ticket

        # Una sola renovación por tenant: WSAA rechaza un segundo loginCms
        # mientras el ticket emitido siga vigente.
        with self.locks.hold(("wsaa", config.tenant_id)):
            stored = self._stored_ticket(config.tenant_id, now)
            if stored is not None:
                return self._adopt(config, stored)
            return self._renew(config, now)

    def _renew(self, config: FiscalConfig, now: datetime.datetime) -> Ticket:
        cert, key = load_credentials(config)
        cms = sign_tra(create_tra(self.service, now), cert, key)

        logger.info("Renovando ticket WSAA para tenant %s (%s)", config.tenant_id, config.environment.value)
        try:
            ticket = parse_login_response(self.login(config.environment.value, cms))
        except AuthenticationError as e:
            e.tenant_id = config.tenant_id
            if e.code and ALREADY_AUTHENTICATED in e.code:
                # Otro proceso renovó primero: su ticket ya está guardado
                stored = self._stored_ticket(config.tenant_id, now)
                if stored is not None:
                    return self._adopt(config, stored)
                raise TransientError(
                    "WSAA informa un ticket vigente que todavía no está guardado",
                    operation="loginCms", tenant_id=config.tenant_id, code=e.code,
                ) from e
            logger.error("Autenticación WSAA fallida para tenant %s: %s", config.tenant_id, e.message)
            self.store.mark_status(config.tenant_id, ConfigStatus.ERROR, error=e.message)
            config.status = ConfigStatus.ERROR
            config.last_error = e.message
            raise
        except (TransientError, ProtocolError) as e:
            e.tenant_id = config.tenant_id
            raise

        if not ticket.is_usable(now, datetime.timedelta(0)):
            raise ProtocolError("WSAA devolvió un ticket ya vencido", operation="loginCms",
                                tenant_id=config.tenant_id)

        self.store.save_ticket(config.tenant_id, ticket)
        return self._adopt(config, ticket)

    def validate_certificate(self, cert_pem: str) -> CertificateInfo:
        return validate_certificate(cert_pem, self.clock())
