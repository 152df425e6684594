import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

from .errors import StorageConflictError

logger = logging.getLogger(__name__)

_DELETED = object()


class InMemoryStorage:
    """Row store for the ledger.

    Reads return deep copies. All writes go through ``unit_of_work()``, which
    serializes writers, checks row versions and applies every staged change
    at once, or none of them if the block raises.
    """

    def __init__(self, seed: bool = False):
        self.actors: dict[UUID, dict] = {}
        self.actor_codes: dict[str, UUID] = {}
        self.product_rewards: dict[str, dict] = {}
        self.wallets: dict[UUID, dict] = {}
        self.wallet_transactions: dict[UUID, dict] = {}
        self.commissions: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.earnings: dict[UUID, dict] = {}
        self.payouts: dict[UUID, dict] = {}
        self.clicks: dict[UUID, dict] = {}
        self.attribution_sessions: dict[str, dict] = {}
        self.referral_codes: dict[str, dict] = {}
        self.referral_settings: dict[UUID, dict] = {}
        self.referral_transactions: dict[UUID, dict] = {}
        self.reconciliation_cases: dict[UUID, dict] = {}
        self._lock = threading.RLock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)
        actor_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        self.actors[actor_id] = {
            "id": actor_id, "name": "Demo Affiliate", "code": "DEMO10",
            "is_active": True, "created_at": now,
        }
        self.actor_codes["DEMO10"] = actor_id
        self.product_rewards["prod-demo"] = {
            "product_id": "prod-demo", "is_enabled": True,
            "basis": {"type": "percentage", "value": Decimal("10"), "cap": Decimal("50.00")},
            "product_price": Decimal("1000.00"), "updated_at": now,
        }

    def _table(self, name: str) -> dict:
        table = getattr(self, name, None)
        if not isinstance(table, dict):
            raise KeyError(f"Unknown table {name}")
        return table

    def get(self, table: str, key) -> Optional[Any]:
        with self._lock:
            row = self._table(table).get(key)
            return copy.deepcopy(row) if row is not None else None

    def select(self, table: str, predicate: Optional[Callable[[dict], bool]] = None) -> list:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._table(table).values()]
        if predicate:
            rows = [r for r in rows if predicate(r)]
        return rows

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    @contextmanager
    def unit_of_work(self) -> Iterator["UnitOfWork"]:
        with self._lock:
            uow = UnitOfWork(self)
            yield uow
            uow.commit()


class UnitOfWork:
    def __init__(self, storage: InMemoryStorage):
        self._storage = storage
        self._staged: dict[tuple[str, Any], Any] = {}

    def get(self, table: str, key) -> Optional[Any]:
        staged = self._staged.get((table, key))
        if staged is _DELETED:
            return None
        if staged is not None:
            return copy.deepcopy(staged)
        return self._storage.get(table, key)

    def select(self, table: str, predicate: Optional[Callable[[dict], bool]] = None) -> list:
        rows = {k: r for k, r in self._storage._table(table).items()}
        for (t, key), row in self._staged.items():
            if t != table:
                continue
            if row is _DELETED:
                rows.pop(key, None)
            else:
                rows[key] = row
        result = [copy.deepcopy(r) for r in rows.values()]
        if predicate:
            result = [r for r in result if predicate(r)]
        return result

    def insert(self, table: str, key, row) -> Any:
        if self.get(table, key) is not None:
            raise StorageConflictError(f"{table} row {key} already exists")
        self._staged[(table, key)] = copy.deepcopy(row)
        return row

    def put(self, table: str, key, row) -> Any:
        """Unversioned upsert, for rows that carry no version."""
        self._staged[(table, key)] = copy.deepcopy(row)
        return row

    def update(self, table: str, key, row: dict, expected_version: int) -> dict:
        """Compare-and-swap write; a missing row counts as version 0."""
        current = self.get(table, key)
        current_version = current.get("version", 0) if current is not None else 0
        if current_version != expected_version:
            logger.debug(
                f"Version conflict on {table}/{key}: expected {expected_version}, found {current_version}"
            )
            raise StorageConflictError(
                f"{table} row {key} changed concurrently (expected version {expected_version}, found {current_version})"
            )
        row = {**row, "version": expected_version + 1}
        self._staged[(table, key)] = copy.deepcopy(row)
        return row

    def delete(self, table: str, key) -> None:
        self._staged[(table, key)] = _DELETED

    def commit(self) -> None:
        for (table, key), row in self._staged.items():
            target = self._storage._table(table)
            if row is _DELETED:
                target.pop(key, None)
            else:
                target[key] = row
        self._staged.clear()
