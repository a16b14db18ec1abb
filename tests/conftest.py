import httpx
import pytest

from boxoffice.config import CredentialStore
from boxoffice.crypto import generate_key
from boxoffice.infra.sql import GatedAsyncSession, make_async_engine
from boxoffice.model.db import Base
from boxoffice.payments.square import SquareProvider
from boxoffice.payments.stripe import StripeProvider

from .fakes import FakeSquare, FakeStripe

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
SQUARE_SIGNATURE_KEY = "square_sig_key"


def credential_env(**overrides):
    env = {
        "ENCRYPTION_KEY": generate_key(),
        "PAYMENT_PROVIDER": "stripe",
        "STRIPE_SECRET_KEY": "sk_test_123",
        "STRIPE_WEBHOOK_SECRET": STRIPE_WEBHOOK_SECRET,
        "SQUARE_ACCESS_TOKEN": "sq_token",
        "SQUARE_WEBHOOK_SIGNATURE_KEY": SQUARE_SIGNATURE_KEY,
        "SQUARE_LOCATION_ID": "LOC1",
        "CURRENCY": "eur",
    }
    env.update(overrides)
    return {k: v for k, v in env.items() if v is not None}


@pytest.fixture
async def sessions(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'test.db'}"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def new_db(sessions):
    """Factory for independent sessions (one per concurrent caller)."""
    SessionAsync, gated = sessions
    opened = []

    def make():
        session = SessionAsync()
        opened.append(session)
        return GatedAsyncSession(session=session, gated=gated)

    yield make
    for session in opened:
        await session.close()


@pytest.fixture
async def db(sessions):
    SessionAsync, gated = sessions
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


@pytest.fixture
def env():
    return credential_env()


@pytest.fixture
def credentials(sessions, env):
    SessionAsync, _ = sessions
    return CredentialStore(SessionAsync, env=env)


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def fake_square():
    return FakeSquare()


@pytest.fixture
def stripe(credentials, fake_stripe):
    return StripeProvider(
        credentials,
        transport=httpx.MockTransport(fake_stripe.handler),
        api_base="https://stripe.test",
    )


@pytest.fixture
def square(credentials, fake_square):
    return SquareProvider(
        credentials,
        transport=httpx.MockTransport(fake_square.handler),
        api_base="https://square.test",
    )


@pytest.fixture
def providers(stripe, square):
    return {"stripe": stripe, "square": square}
