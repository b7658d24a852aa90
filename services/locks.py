from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock


class KeyedLocks:
    """Um lock reentrante por chave (ex.: id da assinatura), criado sob demanda.

    Serializa mutacoes dentro do processo; entre processos vale o
    SELECT ... FOR UPDATE feito por quem segura o lock. A entrada de uma chave
    sai do mapa quando ninguem mais a segura ou espera por ela.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        # chave -> [lock, quantos seguram ou esperam]
        self._locks: dict[str, list] = {}

    def key_count(self) -> int:
        with self._lock:
            return len(self._locks)

    def _checkout(self, key: str) -> RLock:
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        key = str(key)
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)


subscription_locks = KeyedLocks()
