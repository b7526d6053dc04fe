from datetime import date
from typing import Callable, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import models  # noqa: F401
from categorization import CategorizationEngine
from database import Base
from models import Account
from schemas import AccountIn, CanonicalTransaction
from seed import seed_defaults
from services import AccountService
from storage import InMemoryFileStorage


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    engine.dispose()


@pytest.fixture()
def seeded(session: Session) -> Session:
    seed_defaults(session)
    return session


@pytest.fixture()
def storage() -> InMemoryFileStorage:
    return InMemoryFileStorage()


@pytest.fixture()
def rule_engine() -> CategorizationEngine:
    return CategorizationEngine()


@pytest.fixture()
def make_account(session: Session) -> Callable[..., Account]:
    def _make(name: str = "Courant", owner_id: int = 1) -> Account:
        return AccountService(session).create(AccountIn(name=name, owner_id=owner_id))

    return _make


@pytest.fixture()
def txn() -> Callable[..., CanonicalTransaction]:
    def _txn(
        day: date,
        description: str,
        amount_cents: int,
        bank_category: Optional[str] = None,
    ) -> CanonicalTransaction:
        return CanonicalTransaction(
            date=day,
            description=description,
            amount_cents=amount_cents,
            bank_category=bank_category,
        )

    return _txn
