import os
import sys
import uuid
from pathlib import Path

from collections.abc import Generator
from typing import Any, Mapping

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_DATABASE_URL = "sqlite://"
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("AMOUNT_RECONCILIATION_ENABLED", "false")

from donations.database import Base, get_db  # noqa: E402
from donations.main import app  # noqa: E402
from donations.models import AdminRole, AdminUserRole, CaseCategory, PaymentMethod, User  # noqa: E402
from donations.routers.contribution_import import get_identity_provider  # noqa: E402
from donations.services.identity_provider import IdentityAccount, IdentityProviderError  # noqa: E402

ADMIN_EMAIL = "admin@example.org"


def _create_testing_engine():
    return create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )


def _create_test_sessionmaker(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def _seed_lookups(session: Session) -> None:
    admin = User(email=ADMIN_EMAIL, role="admin", first_name="Site", last_name="Admin", language="en")
    admin_role = AdminRole(name="admin", display_name="Admin")
    session.add_all(
        [
            admin,
            admin_role,
            AdminRole(name="super_admin", display_name="Super Admin"),
            AdminRole(name="donor", display_name="Donor"),
            CaseCategory(name="Medical Support"),
            CaseCategory(name="Educational Support"),
            CaseCategory(name="Other"),
            PaymentMethod(code="bank_transfer", name="Bank Transfer", sort_order=2),
            PaymentMethod(code="cash", name="Cash", sort_order=1),
        ]
    )
    session.flush()
    session.add(AdminUserRole(user_id=admin.id, role_id=admin_role.id))
    session.commit()


class FakeIdentityProvider:
    """In-memory identity directory with scriptable create failures."""

    def __init__(self) -> None:
        self.accounts: dict[str, IdentityAccount] = {}
        self.create_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.list_calls = 0
        self.list_error: IdentityProviderError | None = None
        # (error to raise, whether the account is stored anyway)
        self.create_errors: list[tuple[IdentityProviderError, bool]] = []

    def seed(self, email: str) -> IdentityAccount:
        account = IdentityAccount(id=str(uuid.uuid4()), email=email)
        self.accounts[email] = account
        return account

    def list_accounts(self, *, page: int = 1, per_page: int = 1000) -> list[IdentityAccount]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        accounts = list(self.accounts.values())
        start = (page - 1) * per_page
        return accounts[start : start + per_page]

    def create_account(self, email: str, *, metadata: Mapping[str, Any] | None = None) -> IdentityAccount:
        self.create_calls.append(email)
        account = IdentityAccount(id=str(uuid.uuid4()), email=email, metadata=dict(metadata or {}))
        if self.create_errors:
            error, stored = self.create_errors.pop(0)
            if stored:
                self.accounts[email] = account
            raise error
        if email in self.accounts:
            raise IdentityProviderError(
                "A user with this email address has already been registered", status_code=422
            )
        self.accounts[email] = account
        return account

    def delete_account(self, account_id: str) -> None:
        self.delete_calls.append(account_id)
        for email, account in list(self.accounts.items()):
            if account.id == account_id:
                del self.accounts[email]


@pytest.fixture(scope="session")
def engine():
    engine = _create_testing_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(engine) -> Generator[Session, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    connection = engine.connect()

    TestingSessionLocal = _create_test_sessionmaker(connection)
    session = TestingSessionLocal()

    # Lookups every import and approval flow expects to find.
    _seed_lookups(session)

    try:
        yield session
    finally:
        session.close()
        connection.close()


@pytest.fixture()
def admin_user(db_session: Session) -> User:
    return db_session.scalars(select(User).where(User.email == ADMIN_EMAIL)).one()


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(db_session: Session, identity_provider: FakeIdentityProvider) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_provider] = lambda: identity_provider

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_identity_provider, None)
