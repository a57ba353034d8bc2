"""
Deposit Record Store
Keyed record store with point lookup and full-scan iteration.

Two backings share the same contract:
- InMemoryDepositStore: volatile dict, the default when no DATABASE_URL is set
- SqlDepositStore: SQLAlchemy, one short session per call, detached records out

Neither backing serializes read-modify-write cycles on its own; callers hold the
deposit's lock from DepositLockManager around get -> mutate -> put.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import Deposit

logger = logging.getLogger(__name__)


class DepositStore(ABC):
    """Record store interface consumed by the deposit engine"""

    @abstractmethod
    def get(self, deposit_id: str) -> Optional[Deposit]:
        """Return the deposit or None"""

    @abstractmethod
    def put(self, deposit: Deposit) -> Deposit:
        """Insert or replace the deposit, returning the stored record"""

    @abstractmethod
    def scan_all(self) -> List[Deposit]:
        """Return every stored deposit"""

    def count(self) -> int:
        return len(self.scan_all())


class InMemoryDepositStore(DepositStore):
    """Volatile store; get/put are atomic per call"""

    def __init__(self):
        self._records: Dict[str, Deposit] = {}
        self._mutex = threading.Lock()

    def get(self, deposit_id: str) -> Optional[Deposit]:
        with self._mutex:
            return self._records.get(deposit_id)

    def put(self, deposit: Deposit) -> Deposit:
        if not deposit.id:
            raise ValueError("Deposit must have an id before it is stored")
        with self._mutex:
            self._records[deposit.id] = deposit
        return deposit

    def scan_all(self) -> List[Deposit]:
        with self._mutex:
            return list(self._records.values())

    def count(self) -> int:
        with self._mutex:
            return len(self._records)


class SqlDepositStore(DepositStore):
    """SQLAlchemy-backed store; records are returned detached from their session"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, deposit_id: str) -> Optional[Deposit]:
        with managed_session(self.session_factory) as session:
            deposit = session.get(Deposit, deposit_id)
            if deposit is not None:
                session.expunge(deposit)
            return deposit

    def put(self, deposit: Deposit) -> Deposit:
        if not deposit.id:
            raise ValueError("Deposit must have an id before it is stored")
        with managed_session(self.session_factory) as session:
            merged = session.merge(deposit)
            session.flush()
            session.expunge(merged)
        logger.debug(f"💾 DEPOSIT_STORED: {deposit.id} status={deposit.status} payment={deposit.payment_status}")
        return merged

    def scan_all(self) -> List[Deposit]:
        with managed_session(self.session_factory) as session:
            deposits = list(session.execute(select(Deposit)).scalars().all())
            for deposit in deposits:
                session.expunge(deposit)
            return deposits
