import json
import logging
from contextlib import contextmanager
from functools import partial
from typing import List, Optional
import psycopg2
from psycopg2 import pool, Error, IntegrityError
from psycopg2.extras import Json, RealDictCursor
from .config import settings
from .crypto import SecretBox
from .errors import RecordConflictError
from .models import (
    ConfigStatus,
    FiscalConfig,
    FiscalConfigUpdate,
    FiscalDocument,
    SalesPoint,
    Ticket,
)

logger = logging.getLogger(__name__)

db_pool = None

# ————————————————————————————————————————————————
# Pool de conexiones compartido por los repositorios
# ————————————————————————————————————————————————
def connect_to_db():
    global db_pool
    try:
        db_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=settings.DB_POOL_MAX,
            host=settings.DB_HOST,
            user=settings.DB_USER,
            password=settings.DB_PASS,
            dbname=settings.DB_NAME,
            port=settings.DB_PORT,
            sslmode=settings.DB_SSLMODE
        )
    except psycopg2.OperationalError as e:
        raise RuntimeError(f"Error creando el pool de conexiones a la BD: {e}")


def close_db_connection():
    global db_pool
    if db_pool:
        db_pool.closeall()
        db_pool = None


def get_pool():
    if not db_pool:
        raise RuntimeError("El pool de conexiones a la BD no está inicializado.")
    return db_pool


def to_json(value) -> Json:
    # raw_response trae Decimal/datetime de zeep
    return Json(value, dumps=partial(json.dumps, default=str))


class Repository:
    def __init__(self, pool_getter=get_pool):
        self.pool_getter = pool_getter

    @contextmanager
    def cursor(self):
        """Cursor transaccional: 'with conn' hace commit o rollback."""
        conn = None
        pool_ = self.pool_getter()
        try:
            conn = pool_.getconn()
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield cur
        finally:
            if conn:
                pool_.putconn(conn)


# ————————————————————————————————————————————————
class PostgresConfigStore(Repository):
    """FiscalConfig por tenant. Las credenciales se guardan cifradas."""

    def __init__(self, box: SecretBox, pool_getter=get_pool):
        super().__init__(pool_getter)
        self.box = box

    def _from_row(self, row: dict) -> FiscalConfig:
        ticket = None
        if row["ticket_token"] and row["ticket_sign"] and row["ticket_expires"]:
            ticket = Ticket(token=row["ticket_token"], sign=row["ticket_sign"],
                            expires_at=row["ticket_expires"])
        return FiscalConfig(
            tenant_id=row["tenant_id"],
            environment=row["environment"],
            cuit=row["cuit"],
            certificate=self.box.decrypt(row["certificate"]),
            private_key=self.box.decrypt(row["private_key"]),
            key_passphrase=self.box.decrypt(row["key_passphrase"]),
            status=row["status"],
            ticket=ticket,
            last_error=row["last_error"],
            certificate_expires=row["certificate_expires"],
            last_tested_at=row["last_tested_at"],
        )

    def get(self, tenant_id: str) -> FiscalConfig:
        """Obtiene la configuración; si no existe la crea en PENDING_SETUP."""
        try:
            with self.cursor() as cur:
                cur.execute(
                    "INSERT INTO fiscal_configs (tenant_id) VALUES (%s) ON CONFLICT (tenant_id) DO NOTHING",
                    (tenant_id,),
                )
                cur.execute("SELECT * FROM fiscal_configs WHERE tenant_id = %s", (tenant_id,))
                row = cur.fetchone()
        except Error as e:
            raise RuntimeError(f"Error al leer configuración fiscal en BD: {e}")
        return self._from_row(row)

    def save(self, tenant_id: str, update: FiscalConfigUpdate, certificate_expires=None) -> FiscalConfig:
        """
        Guarda credenciales nuevas. Vuelve a PENDING_SETUP y descarta el
        ticket cacheado: el próximo login lo hace con el certificado nuevo.
        """
        params = {
            "tenant_id": tenant_id,
            "environment": update.environment.value if update.environment else None,
            "cuit": update.cuit,
            "certificate": self.box.encrypt(update.certificate),
            "private_key": self.box.encrypt(update.private_key),
            "key_passphrase": self.box.encrypt(update.key_passphrase),
            "certificate_expires": certificate_expires,
        }
        try:
            with self.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO fiscal_configs (tenant_id) VALUES (%(tenant_id)s)
                    ON CONFLICT (tenant_id) DO NOTHING
                    """,
                    params,
                )
                cur.execute(
                    """
                    UPDATE fiscal_configs SET
                        environment         = COALESCE(%(environment)s, environment),
                        cuit                = COALESCE(%(cuit)s, cuit),
                        certificate         = COALESCE(%(certificate)s, certificate),
                        private_key         = COALESCE(%(private_key)s, private_key),
                        key_passphrase      = COALESCE(%(key_passphrase)s, key_passphrase),
                        certificate_expires = COALESCE(%(certificate_expires)s, certificate_expires),
                        status              = 'PENDING_SETUP',
                        ticket_token        = NULL,
                        ticket_sign         = NULL,
                        ticket_expires      = NULL,
                        last_error          = NULL,
                        updated_at          = now()
                    WHERE tenant_id = %(tenant_id)s
                    RETURNING *
                    """,
                    params,
                )
                row = cur.fetchone()
        except Error as e:
            raise RuntimeError(f"Error al guardar configuración fiscal en BD: {e}")
        return self._from_row(row)

    def save_ticket(self, tenant_id: str, ticket: Ticket) -> None:
        try:
            with self.cursor() as cur:
                cur.execute(
                    """
                    UPDATE fiscal_configs SET
                        ticket_token = %s, ticket_sign = %s, ticket_expires = %s,
                        status = 'ACTIVE', last_error = NULL, updated_at = now()
                    WHERE tenant_id = %s
                    """,
                    (ticket.token, ticket.sign, ticket.expires_at, tenant_id),
                )
        except Error as e:
            raise RuntimeError(f"Error al guardar ticket WSAA en BD: {e}")

    def mark_status(self, tenant_id: str, status: ConfigStatus, error: Optional[str] = None,
                    tested_at=None) -> None:
        try:
            with self.cursor() as cur:
                cur.execute(
                    """
                    UPDATE fiscal_configs SET
                        status = %s, last_error = %s,
                        last_tested_at = COALESCE(%s, last_tested_at), updated_at = now()
                    WHERE tenant_id = %s
                    """,
                    (status.value, error, tested_at, tenant_id),
                )
        except Error as e:
            raise RuntimeError(f"Error al actualizar estado fiscal en BD: {e}")


# ————————————————————————————————————————————————
class PostgresSalesPointRegistry(Repository):
    columns = "number, name, active, emission_kind, is_default"

    def list(self, tenant_id: str) -> List[SalesPoint]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self.columns} FROM sales_points WHERE tenant_id = %s ORDER BY number",
                (tenant_id,),
            )
            return [SalesPoint(**row) for row in cur.fetchall()]

    def get_active(self, tenant_id: str, number: int) -> Optional[SalesPoint]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self.columns} FROM sales_points WHERE tenant_id = %s AND number = %s AND active",
                (tenant_id, number),
            )
            row = cur.fetchone()
        return SalesPoint(**row) if row else None

    def get_default(self, tenant_id: str) -> Optional[SalesPoint]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {self.columns} FROM sales_points WHERE tenant_id = %s AND is_default AND active",
                (tenant_id,),
            )
            row = cur.fetchone()
        return SalesPoint(**row) if row else None

    def upsert(self, tenant_id: str, point: SalesPoint) -> SalesPoint:
        with self.cursor() as cur:
            if point.is_default:
                cur.execute(
                    "UPDATE sales_points SET is_default = FALSE WHERE tenant_id = %s AND number <> %s",
                    (tenant_id, point.number),
                )
            cur.execute(
                f"""
                INSERT INTO sales_points (tenant_id, {self.columns})
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, number) DO UPDATE SET
                    name = EXCLUDED.name, active = EXCLUDED.active,
                    emission_kind = EXCLUDED.emission_kind, is_default = EXCLUDED.is_default
                RETURNING {self.columns}
                """,
                (tenant_id, point.number, point.name, point.active,
                 point.emission_kind.value, point.is_default),
            )
            return SalesPoint(**cur.fetchone())

    def replace_from_remote(self, tenant_id: str, points: List[SalesPoint]) -> List[SalesPoint]:
        """
        Sincroniza con lo informado por ARCA: actualiza estado y tipo de
        emisión, conserva nombre y default locales, y desactiva los que ARCA
        ya no informa.
        """
        numbers = [p.number for p in points]
        with self.cursor() as cur:
            for p in points:
                cur.execute(
                    """
                    INSERT INTO sales_points (tenant_id, number, name, active, emission_kind)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (tenant_id, number) DO UPDATE SET
                        active = EXCLUDED.active, emission_kind = EXCLUDED.emission_kind
                    """,
                    (tenant_id, p.number, p.name, p.active, p.emission_kind.value),
                )
            cur.execute(
                "UPDATE sales_points SET active = FALSE, is_default = FALSE "
                "WHERE tenant_id = %s AND NOT (number = ANY(%s))",
                (tenant_id, numbers),
            )
        return self.list(tenant_id)


# ————————————————————————————————————————————————
class PostgresDocumentRepository(Repository):
    """Comprobantes fiscales: solo INSERT, nunca UPDATE."""

    def insert(self, document: FiscalDocument) -> FiscalDocument:
        params = document.model_dump(exclude={"id", "created_at"})
        params["status"] = document.status.value
        params["observations"] = to_json([o.model_dump() for o in document.observations])
        params["raw_response"] = to_json(document.raw_response)
        columns = list(params)
        insert_sql = (
            f"INSERT INTO fiscal_documents ({', '.join(columns)}) "
            f"VALUES ({', '.join(f'%({c})s' for c in columns)}) "
            "RETURNING id, created_at"
        )
        try:
            with self.cursor() as cur:
                cur.execute(insert_sql, params)
                row = cur.fetchone()
        except IntegrityError as e:
            raise RecordConflictError(
                f"El comprobante {document.full_number} ya está registrado",
                operation="record", tenant_id=document.tenant_id,
                document_key=(document.sales_point, document.document_type),
            ) from e
        except Error as e:
            raise RuntimeError(f"Error al guardar comprobante en BD: {e}")
        return document.model_copy(update={"id": row["id"], "created_at": row["created_at"]})

    def find_by_number(self, tenant_id: str, sales_point: int, document_type: int,
                       sequence_number: int) -> Optional[FiscalDocument]:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM fiscal_documents
                WHERE tenant_id = %s AND sales_point = %s AND document_type = %s
                  AND sequence_number = %s
                ORDER BY (status = 'AUTHORIZED') DESC, id DESC
                LIMIT 1
                """,
                (tenant_id, sales_point, document_type, sequence_number),
            )
            row = cur.fetchone()
        return FiscalDocument(**row) if row else None

    def get(self, tenant_id: str, document_id: int) -> Optional[FiscalDocument]:
        with self.cursor() as cur:
            cur.execute(
                "SELECT * FROM fiscal_documents WHERE tenant_id = %s AND id = %s",
                (tenant_id, document_id),
            )
            row = cur.fetchone()
        return FiscalDocument(**row) if row else None
