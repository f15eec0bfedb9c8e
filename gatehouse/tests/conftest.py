from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from gatehouse.core.config import MembershipPolicy, PasswordFormat, RolePolicy
from gatehouse.domain.models import Base
from gatehouse.persistence.db import build_engine, build_session_factory
from gatehouse.services.credentials import CredentialStore
from gatehouse.services.lockout import LockoutTracker
from gatehouse.services.passwords.codec import AesSivPasswordCipher, PasswordCodec
from gatehouse.services.roles import RoleStore
from gatehouse.services.tenancy import ApplicationScopeResolver


APPLICATION_NAME = "/storefront"


class FakeClock:
    # Deterministic clock so lockout windows can be crossed without sleeping.
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, *, minutes: float) -> None:
        self.current = self.current + timedelta(minutes=minutes)


@pytest_asyncio.fixture
async def engine():
    # One shared in-memory SQLite connection stands in for Postgres in unit tests.
    engine = build_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def membership_policy() -> MembershipPolicy:
    return MembershipPolicy(
        application_name=APPLICATION_NAME,
        password_format=PasswordFormat.HASHED,
        max_invalid_password_attempts=5,
        password_attempt_window_minutes=10,
        min_required_password_length=7,
        min_required_non_alphanumeric_characters=1,
    )


@pytest.fixture
def codec() -> PasswordCodec:
    return PasswordCodec(hash_algorithm="sha256", cipher=AesSivPasswordCipher(os.urandom(64)))


@pytest.fixture
def resolver(session_factory) -> ApplicationScopeResolver:
    return ApplicationScopeResolver(session_factory)


@pytest.fixture
def make_credential_store(session_factory, codec, resolver, clock):
    # Build stores under alternative policies while sharing the database and clock.
    def _make(policy: MembershipPolicy, **kwargs) -> CredentialStore:
        return CredentialStore(
            session_factory,
            policy,
            codec=codec,
            resolver=resolver,
            lockout=LockoutTracker.from_policy(policy, time_provider=clock),
            **kwargs,
        )

    return _make


@pytest.fixture
def credential_store(make_credential_store, membership_policy) -> CredentialStore:
    return make_credential_store(membership_policy)


@pytest.fixture
def role_store(session_factory, resolver) -> RoleStore:
    return RoleStore(session_factory, RolePolicy(application_name=APPLICATION_NAME), resolver=resolver)
