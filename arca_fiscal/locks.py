"""
Sección exclusiva por clave de numeración (tenant, punto de venta, tipo).

Entre la consulta del último autorizado y el envío a FECAESolicitar no puede
haber otro envío para la misma clave: ARCA aceptaría solo uno y el otro
quemaría el número.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Tuple


def lock_name(key: Tuple) -> str:
    return "arca:" + ":".join(str(part) for part in key)


class KeyedLock:
    """Mutex por clave dentro del proceso. Las claves sin uso se liberan."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AdvisoryLock:
    """
    Advisory lock de PostgreSQL: serializa entre procesos y réplicas.
    Ocupa una conexión del pool mientras dura la sección.
    """

    def __init__(self, pool_getter):
        self.pool_getter = pool_getter

    @contextmanager
    def hold(self, key: Tuple):
        pool = self.pool_getter()
        conn = pool.getconn()
        name = lock_name(key)
        try:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (name,))
            try:
                yield
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (name,))
        finally:
            # el pool la vuelve a entregar a repositorios transaccionales
            conn.autocommit = False
            pool.putconn(conn)
