import asyncio
import io

import jwt
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.core.config import get_settings
from app.core.db import Base, create_engine, create_session_factory, init_models
from app.core.jobs import get_job_backend
from app.main import create_app

JWT_SECRET = "test-secret"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default Pictor environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        get_job_backend.cache_clear()
        yield
        get_job_backend.cache_clear()
        get_settings.cache_clear()
        return
    db_path = tmp_path / "pictor_test.db"
    storage_root = tmp_path / "storage"

    monkeypatch.setenv("PICTOR_ENV", "test")
    monkeypatch.setenv("PICTOR_LOG_LEVEL", "debug")
    monkeypatch.setenv("PICTOR_JSON_LOGS", "false")
    monkeypatch.setenv("PICTOR_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("PICTOR_STORAGE_BACKEND", "local")
    monkeypatch.setenv("PICTOR_LOCAL_ROOT_PATH", str(storage_root))
    monkeypatch.setenv("PICTOR_JOB_BACKEND", "inline")
    monkeypatch.setenv("PICTOR_JOB_MAX_RETRIES", "2")
    monkeypatch.setenv("PICTOR_JOB_RETRY_INITIAL_DELAY_S", "0")
    monkeypatch.setenv("PICTOR_JWT_SECRET", JWT_SECRET)
    monkeypatch.delenv("PICTOR_JWT_ISSUER", raising=False)
    monkeypatch.delenv("PICTOR_JWT_AUDIENCE", raising=False)

    get_settings.cache_clear()
    get_job_backend.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    asyncio.run(init_models(engine))

    yield settings

    async def _teardown() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(_teardown())
    get_job_backend.cache_clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


def run_in_session(settings, fn):
    """Run ``await fn(session)`` against the test database and return its result."""

    async def _run():
        engine = create_engine(settings)
        try:
            async with create_session_factory(engine)() as session:
                return await fn(session)
        finally:
            await get_job_backend().drain()
            await engine.dispose()

    return asyncio.run(_run())


def build_token(user_id: str | None, *, scopes: list[str] | None = None) -> str:
    payload: dict = {}
    if user_id:
        payload["sub"] = user_id
    if scopes:
        payload["scopes"] = scopes
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str, *, scopes: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token(user_id, scopes=scopes)}"}


@pytest.fixture()
def user_headers() -> dict[str, str]:
    return auth_headers("user-1")


@pytest.fixture()
def other_user_headers() -> dict[str, str]:
    return auth_headers("user-2")


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return auth_headers("admin-1", scopes=["admin"])


def make_jpeg(width: int = 640, height: int = 480, color: tuple[int, int, int] = (200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return make_jpeg()
