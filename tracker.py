import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from config import Settings, get_settings
from database import make_engine, make_session_factory
from events import FORCE_REFRESH_ALL, EventBus, ForceRefreshAll, get_event_bus
from outcomes import Outcome
from services import (
    AccountService,
    BalanceSynchronizer,
    LiabilityService,
    RecurringRuleService,
    TransactionService,
)
from storage import (
    ACCOUNTS_KEY,
    KEY_MODELS,
    LEDGER_KEY,
    LIABILITIES_KEY,
    RULES_KEY,
    LocalStore,
    PersistenceError,
    RemoteStore,
    Snapshot,
)


logger = logging.getLogger(__name__)

REMOTE_PENDING = "remote"


def _local_pending(key: str) -> str:
    return f"local:{key}"


class FinanceTracker:
    """Wires the ledger, rules, balances and liabilities around one event bus.

    Mutations go through :meth:`unit_of_work`, which serializes them and
    writes the resulting state to the stores once the outermost block exits.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: Optional[RemoteStore] = None,
        *,
        user_id: str = "local",
        bus: Optional[EventBus] = None,
    ) -> None:
        self.local = local
        self.remote = remote
        self.user_id = user_id
        self.bus = bus or get_event_bus()
        self.accounts = AccountService()
        self.ledger = TransactionService(self.accounts, self.bus)
        self.synchronizer = BalanceSynchronizer(self.accounts, self.ledger, self.bus)
        self.rules = RecurringRuleService(self.ledger, self.bus)
        self.liabilities = LiabilityService(
            self.accounts, self.rules, self.synchronizer, self.bus
        )
        self.pending: set[str] = set()
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, *, bus: Optional[EventBus] = None
    ) -> "FinanceTracker":
        settings = settings or get_settings()
        local_engine = make_engine(settings.database_url)
        LocalStore.create_schema(local_engine)
        remote = None
        if settings.remote_database_url:
            remote_engine = make_engine(settings.remote_database_url)
            remote = RemoteStore(make_session_factory(remote_engine))
        return cls(
            LocalStore(make_session_factory(local_engine)),
            remote,
            user_id=settings.user_id,
            bus=bus,
        )

    @contextmanager
    def unit_of_work(self) -> Iterator["FinanceTracker"]:
        with self._lock:
            self._depth += 1
            try:
                yield self
            except Exception:
                # memory may already be ahead of the stores
                self.pending.update(_local_pending(key) for key in KEY_MODELS)
                raise
            finally:
                self._depth -= 1
            if self._depth == 0:
                self.persist()

    @contextmanager
    def read(self) -> Iterator["FinanceTracker"]:
        """Hold the lock for a read so no unit of work is seen half applied."""
        with self._lock:
            yield self

    def snapshot(self) -> Snapshot:
        return Snapshot(
            transactions=self.ledger.list(),
            rules=self.rules.list(),
            accounts=self.accounts.list(),
            liabilities=self.accounts.list_liabilities(),
        )

    def _collection(self, key: str) -> list:
        snapshot = self.snapshot()
        return {
            LEDGER_KEY: snapshot.transactions,
            RULES_KEY: snapshot.rules,
            ACCOUNTS_KEY: snapshot.accounts,
            LIABILITIES_KEY: snapshot.liabilities,
        }[key]

    def _save_local(self, key: str) -> None:
        try:
            self.local.save(key, self._collection(key))
        except PersistenceError:
            self.pending.add(_local_pending(key))
            logger.exception(f"persist_failed: store=local key={key}")
            raise
        self.pending.discard(_local_pending(key))

    def _push(self) -> None:
        try:
            self.remote.replace_all(self.user_id, self.snapshot())
        except PersistenceError:
            self.pending.add(REMOTE_PENDING)
            logger.exception(f"persist_failed: store=remote user_id={self.user_id}")
            raise
        self.pending.discard(REMOTE_PENDING)

    def persist(self) -> None:
        """Write every collection locally, then mirror remotely if configured.

        Each failed write is recorded in ``pending`` and the first failure is
        re-raised after the remaining writes have been attempted.
        """
        first_error: Optional[PersistenceError] = None
        for key in KEY_MODELS:
            try:
                self._save_local(key)
            except PersistenceError as exc:
                first_error = first_error or exc
        if self.remote is not None:
            try:
                self._push()
            except PersistenceError as exc:
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def retry_pending(self) -> set[str]:
        with self._lock:
            for item in sorted(self.pending):
                try:
                    if item == REMOTE_PENDING:
                        if self.remote is not None:
                            self._push()
                        else:
                            self.pending.discard(item)
                    else:
                        self._save_local(item.split(":", 1)[1])
                except PersistenceError:
                    continue
            if self.pending:
                logger.warning(f"persist_pending: items={sorted(self.pending)}")
            return set(self.pending)

    def _install(self, snapshot: Snapshot) -> None:
        self.accounts.replace_all(snapshot.accounts, snapshot.liabilities)
        self.ledger.replace_all(snapshot.transactions)
        self.rules.replace_all(snapshot.rules)
        self.liabilities.rebuild_links()

    def load(self) -> None:
        with self._lock:
            self._install(self.local.load_all())
            drifts = self.synchronizer.check_drift()
            logger.info(
                f"tracker_loaded: transactions={len(self.ledger.records)} "
                f"rules={len(self.rules.rules)} drifted_accounts={len(drifts)}"
            )

    def materialize_due(self, as_of: Optional[date] = None) -> Outcome:
        with self.unit_of_work():
            return self.rules.materialize_due(as_of)

    def force_refresh(self, reason: str = "manual") -> None:
        """Flush pending writes, reload the ledger and recompute every balance."""
        with self.unit_of_work():
            if self.pending:
                self.retry_pending()
            if not self.pending:
                self.ledger.replace_all(self.local.load(LEDGER_KEY))
            else:
                logger.warning("force_refresh: reload skipped, unsaved changes remain")
            self.bus.publish(FORCE_REFRESH_ALL, ForceRefreshAll(reason=reason))

    def push_remote(self) -> Outcome[Snapshot]:
        if self.remote is None:
            return Outcome.invalid("Remote store is not configured")
        with self._lock:
            self._push()
            return Outcome.success(self.snapshot())

    def pull_remote(self) -> Outcome[Snapshot]:
        if self.remote is None:
            return Outcome.invalid("Remote store is not configured")
        snapshot = self.remote.fetch_all(self.user_id)
        with self.unit_of_work():
            self._install(snapshot)
            self.synchronizer.recompute_all()
        return Outcome.success(snapshot)
