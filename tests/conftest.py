import json
from decimal import Decimal

import httpx
import jwt
import pytest
import pytest_asyncio

from storefront.config import JWT_ALGORITHM, JWT_SECRET
from storefront.db import create_engine, create_session_factory, init_db
from storefront.inventory import commands as inventory_commands
from storefront.main import app


class RecordingRedis:
    """publish された内容を記録するだけの Redis 代替。"""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def channel(self, name: str) -> list[dict]:
        return [message for channel, message in self.published if channel == name]


@pytest_asyncio.fixture
async def engine(tmp_path):
    # 同時実行のテストで別々の接続を使えるようにファイルの DB を使う
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def seed(session_factory):
    async def _seed(name="Chocolate Truffle", price="2.50", quantity=10, category="chocolate"):
        async with session_factory() as session:
            async with session.begin():
                return await inventory_commands.add_sweet(
                    session,
                    name=name,
                    category=category,
                    price=Decimal(price),
                    quantity=quantity,
                )

    return _seed


@pytest.fixture
def make_token():
    def _make_token(user_id="buyer-1", role="user", secret=JWT_SECRET, **claims):
        payload = {"userId": user_id, "role": role, **claims}
        return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)

    return _make_token


@pytest.fixture
def auth_header(make_token):
    def _auth_header(user_id="buyer-1", role="user"):
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _auth_header


@pytest_asyncio.fixture
async def client(session_factory, redis):
    app.state.session_factory = session_factory
    app.state.redis = redis
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
