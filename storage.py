import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence, Type

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base, session_scope
from models import AccountRow, LiabilityRow, LocalBlob, RecurringRuleRow, TransactionRow
from schemas import Account, Liability, RecurringRule, TransactionRecord


logger = logging.getLogger(__name__)

LEDGER_KEY = "ledger"
RULES_KEY = "rules"
ACCOUNTS_KEY = "accounts"
LIABILITIES_KEY = "liabilities"

KEY_MODELS: dict[str, Type[BaseModel]] = {
    LEDGER_KEY: TransactionRecord,
    RULES_KEY: RecurringRule,
    ACCOUNTS_KEY: Account,
    LIABILITIES_KEY: Liability,
}

REMOTE_TABLES = (
    TransactionRow.__table__,
    RecurringRuleRow.__table__,
    AccountRow.__table__,
    LiabilityRow.__table__,
)


class PersistenceError(RuntimeError):
    """A store could not be read or written; in-memory state is unchanged."""


@dataclass
class Snapshot:
    transactions: list[TransactionRecord] = field(default_factory=list)
    rules: list[RecurringRule] = field(default_factory=list)
    accounts: list[Account] = field(default_factory=list)
    liabilities: list[Liability] = field(default_factory=list)


class LocalStore:
    """Key/value store of JSON documents, one per collection."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @staticmethod
    def create_schema(engine: Engine) -> None:
        LocalBlob.__table__.create(engine, checkfirst=True)

    def save(self, key: str, records: Sequence[BaseModel]) -> None:
        if key not in KEY_MODELS:
            raise KeyError(key)
        payload = json.dumps([r.model_dump(mode="json") for r in records])
        try:
            with session_scope(self.session_factory) as session:
                blob = session.get(LocalBlob, key)
                if blob is None:
                    session.add(LocalBlob(key=key, payload=payload))
                else:
                    blob.payload = payload
                    blob.updated_at = datetime.utcnow()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Local save failed for {key}") from exc
        logger.debug(f"local_saved: key={key} records={len(records)}")

    def load(self, key: str) -> list:
        model = KEY_MODELS[key]
        try:
            with session_scope(self.session_factory) as session:
                blob = session.get(LocalBlob, key)
                payload = blob.payload if blob else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Local load failed for {key}") from exc
        if not payload:
            return []
        return [model.model_validate(item) for item in json.loads(payload)]

    def load_all(self) -> Snapshot:
        return Snapshot(
            transactions=self.load(LEDGER_KEY),
            rules=self.load(RULES_KEY),
            accounts=self.load(ACCOUNTS_KEY),
            liabilities=self.load(LIABILITIES_KEY),
        )


class RemoteStore:
    """Per-user relational mirror of the whole snapshot."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @staticmethod
    def create_schema(engine: Engine) -> None:
        Base.metadata.create_all(engine, tables=list(REMOTE_TABLES))

    def replace_all(self, user_id: str, snapshot: Snapshot) -> None:
        try:
            with session_scope(self.session_factory) as session:
                for row_cls in (TransactionRow, RecurringRuleRow, AccountRow, LiabilityRow):
                    session.execute(delete(row_cls).where(row_cls.user_id == user_id))
                session.add_all(
                    [TransactionRow(**r.model_dump(), user_id=user_id) for r in snapshot.transactions]
                    + [RecurringRuleRow(**r.model_dump(), user_id=user_id) for r in snapshot.rules]
                    + [AccountRow(**a.model_dump(), user_id=user_id) for a in snapshot.accounts]
                    + [LiabilityRow(**l.model_dump(), user_id=user_id) for l in snapshot.liabilities]
                )
        except SQLAlchemyError as exc:
            raise PersistenceError("Remote sync failed") from exc
        logger.info(
            f"remote_pushed: user_id={user_id} transactions={len(snapshot.transactions)} "
            f"rules={len(snapshot.rules)}"
        )

    def fetch_all(self, user_id: str) -> Snapshot:
        try:
            with session_scope(self.session_factory) as session:
                transactions = session.scalars(
                    select(TransactionRow)
                    .where(TransactionRow.user_id == user_id)
                    .order_by(TransactionRow.date, TransactionRow.created_at, TransactionRow.id)
                ).all()
                rules = session.scalars(
                    select(RecurringRuleRow).where(RecurringRuleRow.user_id == user_id)
                ).all()
                accounts = session.scalars(
                    select(AccountRow).where(AccountRow.user_id == user_id)
                ).all()
                liabilities = session.scalars(
                    select(LiabilityRow).where(LiabilityRow.user_id == user_id)
                ).all()
                return Snapshot(
                    transactions=[TransactionRecord.model_validate(r) for r in transactions],
                    rules=[RecurringRule.model_validate(r) for r in rules],
                    accounts=[Account.model_validate(a) for a in accounts],
                    liabilities=[Liability.model_validate(l) for l in liabilities],
                )
        except SQLAlchemyError as exc:
            raise PersistenceError("Remote fetch failed") from exc
