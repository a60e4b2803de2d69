from datetime import datetime
from typing import Optional

import pytest
from sqlalchemy import select, update

from database import Base, build_engine, build_session_factory
from models import Category, ReportSetting, Transaction, TransactionType, User


class LedgerFixture:
    def __init__(self, factory) -> None:
        self.factory = factory

    def add_user(self, email: str, created_at: datetime) -> int:
        with self.factory() as session:
            user = User(email=email, created_at=created_at)
            session.add(user)
            session.commit()
            return user.id

    def add_txn(
        self,
        user_id: int,
        occurred_at: datetime,
        type_: TransactionType,
        amount_cents: int,
        category: str,
        *,
        deleted_at: Optional[datetime] = None,
    ) -> int:
        with self.factory() as session:
            cat = session.scalars(
                select(Category).where(
                    Category.user_id == user_id,
                    Category.type == type_,
                    Category.name == category,
                )
            ).first()
            if cat is None:
                cat = Category(user_id=user_id, name=category, type=type_)
                session.add(cat)
                session.flush()
            txn = Transaction(
                user_id=user_id,
                occurred_at=occurred_at,
                type=type_,
                amount_cents=amount_cents,
                category_id=cat.id,
                deleted_at=deleted_at,
            )
            session.add(txn)
            session.commit()
            return txn.id

    def set_setting(self, user_id: int, **values) -> None:
        with self.factory() as session:
            session.execute(
                update(ReportSetting)
                .where(ReportSetting.user_id == user_id)
                .values(**values)
            )
            session.commit()

    def setting(self, user_id: int) -> ReportSetting:
        with self.factory() as session:
            return session.get(ReportSetting, user_id)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'reports.db'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory) -> LedgerFixture:
    return LedgerFixture(session_factory)
