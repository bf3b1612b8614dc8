import os
import time

# Configuration is read at import time, so the environment is prepared first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SUPABASE_URL"] = "https://project.supabase.test"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "service-role-key"
os.environ["INTERNAL_JOBS_KEY"] = "internal-jobs-key"
os.environ["MERCADOPAGO_WEBHOOK_SECRET"] = "mp-webhook-secret"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["API_BASE_URL"] = "https://api.gamesales.test"
os.environ["FRONTEND_URL"] = "https://app.gamesales.test"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
for name in (
    "REDIS_URL",
    "REDIS_HOST",
    "MERCADOPAGO_ACCESS_TOKEN",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
):
    os.environ.pop(name, None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt as jose_jwt  # noqa: E402

from gamesales import rate_limiter  # noqa: E402
from gamesales.database import Base, SessionLocal, engine, get_db  # noqa: E402
from gamesales.main import app  # noqa: E402
from gamesales.models import Company, Deal, Profile  # noqa: E402


def make_token(user_id: str, secret: str = "test-jwt-secret", audience: str = "authenticated") -> str:
    claims = {"sub": user_id, "aud": audience, "exp": int(time.time()) + 3600}
    return jose_jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(profile: Profile, **extra) -> dict:
    headers = {"Authorization": f"Bearer {make_token(profile.id)}"}
    headers.update(extra)
    return headers


def mock_http_client(handler):
    """Factory to patch over a module's _http_client with a scripted transport"""

    def factory():
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.memory_cache.clear()
    yield
    rate_limiter.memory_cache.clear()


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_company(db):
    def factory(name="Acme Vendas", plan="starter", subscription_status="active", trial_ends_at=None):
        company = Company(
            name=name,
            plan=plan,
            subscription_status=subscription_status,
            trial_ends_at=trial_ends_at,
        )
        db.add(company)
        db.commit()
        db.refresh(company)
        return company

    return factory


@pytest.fixture
def make_profile(db):
    counter = {"n": 0}

    def factory(company=None, role="vendedor", nome=None, is_super_admin=False, pontos=0, nivel="Bronze"):
        counter["n"] += 1
        profile = Profile(
            company_id=company.id if company else None,
            nome=nome or f"Vendedor {counter['n']}",
            email=f"user{counter['n']}@gamesales.test",
            role=role,
            is_super_admin=is_super_admin,
            pontos=pontos,
            nivel=nivel,
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    return factory


@pytest.fixture
def make_deal(db):
    def factory(owner, title="Mentoria Premium", stage="lead", value=1000.0, **fields):
        deal = Deal(
            user_id=owner.id,
            company_id=owner.company_id,
            title=title,
            stage=stage,
            value=value,
            probability=fields.pop("probability", 10),
            **fields,
        )
        db.add(deal)
        db.commit()
        db.refresh(deal)
        return deal

    return factory
