from __future__ import annotations

import copy
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import psycopg
import pytest

import kutumba.middleware as middleware
import kutumba.routes.auth as auth_routes
import kutumba.routes.persons as persons_routes
import kutumba.routes.relationships as relationships_routes
import kutumba.routes.tree as tree_routes

_NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


class _FakeResult:
    def __init__(self, rows: list[tuple[Any, ...]]) -> None:
        self.rows = list(rows)

    def fetchall(self) -> list[tuple[Any, ...]]:
        return list(self.rows)

    def fetchone(self) -> tuple[Any, ...] | None:
        return self.rows[0] if self.rows else None


class FakeDB:
    """In-memory stand-in for the Postgres tables, matched on SQL prefixes."""

    def __init__(self) -> None:
        self.persons: dict[str, dict[str, Any]] = {}
        self.relationships: list[dict[str, Any]] = []
        self.password_hash: str | None = None
        self.password_updated_at: datetime | None = None
        self.user_log: list[tuple[str, str]] = []
        self.revoked: dict[str, datetime] = {}
        self.fail_user_log = False

    # -- seeding helpers ---------------------------------------------------

    def add_person(self, name: str, gender: str | None = None) -> str:
        pid = str(uuid.uuid4())
        self.persons[pid] = {
            "id": pid,
            "name": name,
            "nickname": None,
            "birthday": None,
            "gender": gender,
            "date_of_death": None,
            "location": None,
            "created_at": _NOW,
            "updated_at": _NOW,
            "flagged_for_deletion": False,
        }
        return pid

    def add_rel(self, person1_id: str, person2_id: str, relationship_type: str) -> str:
        rid = str(uuid.uuid4())
        self.relationships.append(
            {"id": rid, "person1_id": person1_id, "person2_id": person2_id, "relationship_type": relationship_type}
        )
        return rid

    def rels_of_type(self, relationship_type: str) -> list[tuple[str, str]]:
        return [
            (r["person1_id"], r["person2_id"])
            for r in self.relationships
            if r["relationship_type"] == relationship_type
        ]

    # -- transactions ------------------------------------------------------

    def snapshot(self) -> tuple[Any, ...]:
        return copy.deepcopy((self.persons, self.relationships, self.password_hash, self.revoked))

    def restore(self, snap: tuple[Any, ...]) -> None:
        self.persons, self.relationships, self.password_hash, self.revoked = snap

    # -- rows --------------------------------------------------------------

    @staticmethod
    def _person_row(p: dict[str, Any]) -> tuple[Any, ...]:
        return (
            p["id"],
            p["name"],
            p["nickname"],
            p["birthday"],
            p["gender"],
            p["date_of_death"],
            p["location"],
            p["created_at"],
            p["updated_at"],
            p["flagged_for_deletion"],
        )

    @staticmethod
    def _rel_row(r: dict[str, Any]) -> tuple[Any, ...]:
        return (r["id"], r["person1_id"], r["person2_id"], r["relationship_type"], None)

    def _rel(self, rid: str) -> dict[str, Any] | None:
        for r in self.relationships:
            if r["id"] == rid:
                return r
        return None

    # -- query dispatch ----------------------------------------------------

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> _FakeResult:
        q = " ".join((query or "").split()).lower()

        # persons
        if q.startswith("select id, name, nickname") and "from persons order by name" in q:
            people = sorted(self.persons.values(), key=lambda p: (p["name"], p["id"]))
            return _FakeResult([self._person_row(p) for p in people])

        if q.startswith("select id, name, nickname") and "from persons order by created_at" in q:
            return _FakeResult([self._person_row(p) for p in self.persons.values()])

        if q.startswith("select id, name, nickname") and "from persons where id = %s" in q:
            p = self.persons.get(params[0])
            return _FakeResult([self._person_row(p)] if p else [])

        if q.startswith("select id from persons where id = any(%s)"):
            return _FakeResult([(pid,) for pid in params[0] if pid in self.persons])

        if q.startswith("select gender from persons where id = %s"):
            p = self.persons.get(params[0])
            return _FakeResult([(p["gender"],)] if p else [])

        if q.startswith("insert into persons"):
            pid, name, nickname, birthday, gender, date_of_death, location, flagged = params
            self.persons[pid] = {
                "id": pid,
                "name": name,
                "nickname": nickname,
                "birthday": birthday,
                "gender": gender,
                "date_of_death": date_of_death,
                "location": location,
                "created_at": _NOW,
                "updated_at": _NOW,
                "flagged_for_deletion": flagged,
            }
            return _FakeResult([self._person_row(self.persons[pid])])

        if q.startswith("update persons set"):
            name, nickname, birthday, gender, date_of_death, location, flagged, pid = params
            p = self.persons.get(pid)
            if not p:
                return _FakeResult([])
            p.update(
                name=name,
                nickname=nickname,
                birthday=birthday,
                gender=gender,
                date_of_death=date_of_death,
                location=location,
            )
            if flagged is not None:
                p["flagged_for_deletion"] = flagged
            return _FakeResult([self._person_row(p)])

        if q.startswith("delete from persons where id = %s returning id"):
            p = self.persons.pop(params[0], None)
            return _FakeResult([(p["id"],)] if p else [])

        # relationships
        if q.startswith("delete from relationships where person1_id = %s or person2_id = %s"):
            pid = params[0]
            gone = [r for r in self.relationships if pid in (r["person1_id"], r["person2_id"])]
            self.relationships = [r for r in self.relationships if r not in gone]
            return _FakeResult([(r["id"],) for r in gone])

        if q.startswith("select id, person1_id, person2_id, relationship_type from relationships"):
            pid = params[0]
            return _FakeResult(
                [
                    (r["id"], r["person1_id"], r["person2_id"], r["relationship_type"])
                    for r in self.relationships
                    if r["relationship_type"] in ("parent", "child")
                    and pid in (r["person1_id"], r["person2_id"])
                ]
            )

        if q.startswith("select person1_id, person2_id from relationships where relationship_type = 'spouse'"):
            pid = params[0]
            return _FakeResult(
                [
                    (r["person1_id"], r["person2_id"])
                    for r in self.relationships
                    if r["relationship_type"] == "spouse" and pid in (r["person1_id"], r["person2_id"])
                ]
            )

        if q.startswith("insert into relationships"):
            rid, p1, p2, rtype = params
            row = {"id": rid, "person1_id": p1, "person2_id": p2, "relationship_type": rtype}
            self.relationships.append(row)
            return _FakeResult([self._rel_row(row)])

        if q.startswith("select id, person1_id, person2_id, relationship_type, created_at from relationships"):
            if "where id = %s" in q:
                r = self._rel(params[0])
                return _FakeResult([self._rel_row(r)] if r else [])
            if "where person1_id = %s or person2_id = %s" in q:
                pid = params[0]
                return _FakeResult(
                    [self._rel_row(r) for r in self.relationships if pid in (r["person1_id"], r["person2_id"])]
                )
            return _FakeResult([self._rel_row(r) for r in self.relationships])

        if q.startswith("update relationships set"):
            p1, p2, rtype, rid = params
            r = self._rel(rid)
            if not r:
                return _FakeResult([])
            r.update(person1_id=p1, person2_id=p2, relationship_type=rtype)
            return _FakeResult([self._rel_row(r)])

        if q.startswith("delete from relationships where id = %s returning id"):
            r = self._rel(params[0])
            if not r:
                return _FakeResult([])
            self.relationships.remove(r)
            return _FakeResult([(r["id"],)])

        # auth
        if q.startswith("select password_hash from shared_password where id = 1"):
            return _FakeResult([(self.password_hash,)] if self.password_hash else [])

        if q.startswith("insert into shared_password"):
            self.password_hash = params[0]
            self.password_updated_at = datetime.now(timezone.utc)
            return _FakeResult([])

        if q.startswith("insert into user_log"):
            if self.fail_user_log:
                raise psycopg.OperationalError("user_log unavailable")
            self.user_log.append(tuple(params))
            return _FakeResult([])

        if q.startswith("select exists (select 1 from revoked_session"):
            return _FakeResult([(params[0] in self.revoked, self.password_updated_at)])

        if q.startswith("insert into revoked_session"):
            jti, expires_at = params
            self.revoked.setdefault(jti, expires_at)
            return _FakeResult([])

        if q.startswith("delete from revoked_session where expires_at < now()"):
            now = datetime.now(timezone.utc)
            expired = [jti for jti, exp in self.revoked.items() if exp < now]
            for jti in expired:
                del self.revoked[jti]
            return _FakeResult([(jti,) for jti in expired])

        raise AssertionError(f"Unexpected query: {query}")


@pytest.fixture(autouse=True)
def _jwt_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET", "test-secret-key")
    monkeypatch.delenv("APP_ENV", raising=False)


@pytest.fixture(autouse=True)
def _reset_login_attempts() -> Iterator[None]:
    auth_routes._throttle.reset()
    yield
    auth_routes._throttle.reset()


@pytest.fixture()
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDB:
    db = FakeDB()

    @contextmanager
    def _fake_db_conn() -> Iterator[FakeDB]:
        snap = db.snapshot()
        try:
            yield db
        except BaseException:
            db.restore(snap)
            raise

    for mod in (middleware, auth_routes, persons_routes, relationships_routes, tree_routes):
        monkeypatch.setattr(mod, "db_conn", _fake_db_conn)
    return db


@pytest.fixture()
def client(fake_db: FakeDB):
    from fastapi.testclient import TestClient

    from kutumba.main import app

    return TestClient(app)


@pytest.fixture()
def authed_client(client):
    from kutumba.auth import _JWT_COOKIE_NAME, create_jwt

    client.cookies.set(_JWT_COOKIE_NAME, create_jwt("Tester"))
    return client
