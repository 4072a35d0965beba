import fnmatch
import os
import sys
from pathlib import Path

import pytest
import redis

# Ensure project root is on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeRedis:
    """In-memory stand-in for the subset of redis-py the jobs use (decode_responses=True)"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    # --- keys ---
    def ping(self):
        return True

    def close(self):
        self.closed = True

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = str(value)
        self.ttls.pop(key, None)
        return True

    def setex(self, key, seconds, value):
        self.data[key] = str(value)
        self.ttls[key] = int(seconds)
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def expire(self, key, seconds):
        if key not in self.data:
            return False
        self.ttls[key] = int(seconds)
        return True

    def ttl(self, key):
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    def keys(self, pattern="*"):
        return [key for key in self.data if fnmatch.fnmatch(key, pattern)]

    # --- hashes ---
    def hset(self, key, field, value):
        h = self.data.setdefault(key, {})
        created = field not in h
        h[field] = str(value)
        return int(created)

    def hget(self, key, field):
        return self.data.get(key, {}).get(field)

    def hgetall(self, key):
        return dict(self.data.get(key, {}))

    def hdel(self, key, *fields):
        h = self.data.get(key, {})
        removed = 0
        for field in fields:
            if field in h:
                del h[field]
                removed += 1
        return removed

    def hlen(self, key):
        return len(self.data.get(key, {}))

    def hincrby(self, key, field, amount=1):
        h = self.data.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    # --- lists ---
    @staticmethod
    def _slice(items, start, end):
        if end == -1:
            return items[start:]
        return items[start:end + 1]

    def lpush(self, key, *values):
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, str(value))
        return len(items)

    def rpush(self, key, *values):
        items = self.data.setdefault(key, [])
        items.extend(str(v) for v in values)
        return len(items)

    def ltrim(self, key, start, end):
        if key in self.data:
            self.data[key] = self._slice(self.data[key], start, end)
        return True

    def lrange(self, key, start, end):
        return list(self._slice(self.data.get(key, []), start, end))

    def llen(self, key):
        return len(self.data.get(key, []))

    # --- sorted sets ---
    def zadd(self, key, mapping):
        z = self.data.setdefault(key, {})
        added = sum(1 for member in mapping if member not in z)
        z.update({member: float(score) for member, score in mapping.items()})
        return added

    def zcard(self, key):
        return len(self.data.get(key, {}))

    def _ranked(self, key):
        return sorted(self.data.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    def zremrangebyscore(self, key, min_score, max_score):
        z = self.data.get(key, {})
        low, high = float(min_score), float(max_score)
        doomed = [member for member, score in z.items() if low <= score <= high]
        for member in doomed:
            del z[member]
        return len(doomed)

    def zremrangebyrank(self, key, start, end):
        ranked = self._ranked(key)
        size = len(ranked)
        start = start + size if start < 0 else start
        end = end + size if end < 0 else end
        doomed = [member for index, (member, _) in enumerate(ranked) if start <= index <= end]
        for member in doomed:
            del self.data[key][member]
        return len(doomed)

    def zrevrange(self, key, start, end):
        members = [member for member, _ in reversed(self._ranked(key))]
        return self._slice(members, start, end)


class BrokenRedis(FakeRedis):
    """Every command fails as if the server were down"""

    def __getattribute__(self, name):
        if name.startswith("_") or name in ("data", "ttls", "closed", "close"):
            return object.__getattribute__(self, name)
        raise redis.exceptions.ConnectionError("Connection refused")


@pytest.fixture()
def fake_redis():
    from utils.redis_connection import set_redis
    client = FakeRedis()
    set_redis(client)
    yield client
    set_redis(None)


@pytest.fixture()
def broken_redis():
    return BrokenRedis()


@pytest.fixture()
def db(tmp_path, monkeypatch):
    """Point the shared DatabaseManager at a fresh, migrated SQLite file"""
    from database_manager import db_manager
    from migrations.portal_migration import run_portal_migration
    from services.settings_service import invalidate_cache

    db_path = str(tmp_path / "portal.db")
    monkeypatch.setattr(db_manager, "db_type", "sqlite")
    monkeypatch.setattr(db_manager, "db_path", db_path)
    monkeypatch.setattr(db_manager, "connection_params", {"database": db_path})
    assert run_portal_migration(db_manager, verbose=False)
    invalidate_cache()
    yield db_manager
    invalidate_cache()


@pytest.fixture()
def sent_tasks(monkeypatch):
    """Capture celery send_task calls instead of talking to a broker"""
    from celery_app import celery_app

    calls = []

    def fake_send_task(name, args=None, kwargs=None, **options):
        calls.append({"name": name, "kwargs": kwargs or {}, **options})
        return None

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    return calls


@pytest.fixture()
def client(db, fake_redis):
    from app import create_app
    app = create_app({"TESTING": True, "RATELIMIT_ENABLED": False})
    return app.test_client()


@pytest.fixture()
def age_file():
    """Backdate a file's mtime by some seconds"""
    def _age(path, seconds):
        stamp = os.path.getmtime(path) - seconds
        os.utime(path, (stamp, stamp))
    return _age
