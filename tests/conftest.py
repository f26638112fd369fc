import json
from datetime import datetime, timedelta

import pytest
import requests
from redis.exceptions import ConnectionError as RedisConnectionError

from server_api.core.cache import CacheClient
from server_api.core.security import TokenService, get_password_hash
from server_api.db import Base, make_engine, make_session_factory
from server_api.models import File, Gallery, GalleryImage, Server, ServerStats, User, UserServer
from server_api.services.store import ServerStore

PASSWORD = "correct-horse"
PASSWORD_HASH = get_password_hash(PASSWORD)
SECRET = "test-secret"


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.keys = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def exists(self, key):
        self.keys.append(key)
        return self

    async def execute(self):
        self.redis.check()
        return [int(key in self.redis.data) for key in self.keys]


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis``."""

    def __init__(self):
        self.data = {}
        self.expirations = {}
        self.down = False

    def check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        self.check()
        self.data[key] = value
        if ex is not None:
            self.expirations[key] = ex
        return True

    async def exists(self, *keys):
        self.check()
        return sum(1 for key in keys if key in self.data)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheClient("redis://test", client=fake_redis)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tokens(cache, clock):
    return TokenService(cache, secret_key=SECRET, algorithm="HS256", expire_days=30, clock=clock)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ServerStore(session_factory)


class Factory:
    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._base_time = datetime(2024, 1, 1, 12, 0, 0)

    def _save(self, row):
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
        return row

    def server(self, **overrides):
        tags = overrides.pop("tags", ["survival"])
        values = {
            "name": "Server",
            "type": "JAVA",
            "version": "1.20.4",
            "desc": "A friendly server",
            "link": "https://example.com",
            "ip": "10.0.0.1",
            "is_member": True,
            "is_hide": False,
            "auth_mode": "OFFICIAL",
            "tags": tags if isinstance(tags, str) else json.dumps(tags),
        }
        values.update(overrides)
        return self._save(Server(**values))

    def status(self, server_id, payload, minutes=0):
        return self._save(
            ServerStats(
                server_id=server_id,
                stat_data=payload,
                timestamp=self._base_time + timedelta(minutes=minutes),
            )
        )

    def user(self, username="alice", email=None, **overrides):
        values = {
            "username": username,
            "email": email or f"{username}@example.com",
            "display_name": username.title(),
            "hashed_password": PASSWORD_HASH,
            "is_active": True,
        }
        values.update(overrides)
        return self._save(User(**values))

    def grant(self, user_id, server_id, role="owner"):
        return self._save(UserServer(user_id=user_id, server_id=server_id, role=role))

    def file(self, hash_value, file_path):
        return self._save(File(hash_value=hash_value, file_path=file_path))

    def gallery(self, server_id):
        gallery = self._save(Gallery())
        with self.session_factory() as db:
            db.query(Server).filter(Server.id == server_id).update({Server.gallery_id: gallery.id})
            db.commit()
        return gallery

    def gallery_image(self, gallery_id, image_hash, title="Spawn"):
        return self._save(
            GalleryImage(
                gallery_id=gallery_id,
                title=title,
                description="",
                image_hash_id=image_hash,
            )
        )

    def count(self, model):
        with self.session_factory() as db:
            return db.query(model).count()


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"" if payload is None else json.dumps(payload).encode()

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")
