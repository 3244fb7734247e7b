import os
import tempfile

# server.py reads its config at import time
_TMP = tempfile.mkdtemp(prefix="luxetix-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/api.db")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("PAYMENT_GATEWAY", "mock")
os.environ.setdefault("DEDUP_BACKEND", "sql")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "letmein")
os.environ.setdefault("GATEWAY_MAX_ATTEMPTS", "1")

import httpx
import pytest_asyncio

from luxetix.infra.sql import GatedAsyncSession, make_async_engine
from luxetix.model.db import Base


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine, SessionAsync, gated
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def sessions(engine):
    """Factory for independent sessions on the same database."""
    _, SessionAsync, gated = engine
    opened = []

    def _new() -> GatedAsyncSession:
        s = SessionAsync()
        opened.append(s)
        return GatedAsyncSession(session=s, gated=gated)

    yield _new
    for s in opened:
        await s.close()


@pytest_asyncio.fixture
async def db(sessions):
    return sessions()


# ----------------------------
# API
# ----------------------------
@pytest_asyncio.fixture
async def api():
    from luxetix import server

    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://testserver") as client:
        # mockpay emit delivers its callback through this client
        server.app.state.http = client
        try:
            yield client
        finally:
            server.app.state.http = None
    # pooled aiosqlite connections belong to this test's event loop
    await server.engine.dispose()


@pytest_asyncio.fixture
async def api_db(api):
    from luxetix import server
    async with server.SessionAsync() as s:
        yield GatedAsyncSession(session=s, gated=server.gated)
