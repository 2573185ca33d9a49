"""Tests for the database manager, base models and the base repository."""

from datetime import UTC, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from autopilot_common.base import (
    AuditMixin,
    BaseModel,
    BaseRepository,
    WorkspaceScopedMixin,
    ensure_utc,
    utcnow,
)
from autopilot_common.config import Database, DatabaseSettings
from sqlalchemy import String, select, text
from sqlalchemy.orm import Mapped, mapped_column


class NoteORM(BaseModel, WorkspaceScopedMixin, AuditMixin):
    __tablename__ = "common_test_notes"

    title: Mapped[str] = mapped_column(String(255), nullable=False)


class NoteRepository(BaseRepository[NoteORM]):
    model_class = NoteORM


@pytest.fixture
async def database(tmp_path):
    database = Database(DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/common.db"))
    async with database.engine.begin() as connection:
        await connection.run_sync(BaseModel.metadata.create_all)
    yield database
    await database.dispose()


class TestTimeHelpers:
    def test_utcnow_is_aware(self):
        assert utcnow().tzinfo is UTC

    def test_ensure_utc(self):
        naive = datetime(2024, 3, 6, 14, 30)
        shifted = datetime(2024, 3, 6, 15, 30, tzinfo=timezone(timedelta(hours=1)))

        assert ensure_utc(None) is None
        assert ensure_utc(naive) == datetime(2024, 3, 6, 14, 30, tzinfo=UTC)
        assert ensure_utc(shifted).hour == 14
        assert ensure_utc(shifted).tzinfo is UTC


class TestDatabase:
    async def test_session_commits(self, database):
        async with database.session() as session:
            session.add(NoteORM(title="first", workspace_id="ws-1"))

        async with database.session_factory() as session:
            titles = (await session.execute(select(NoteORM.title))).scalars().all()

        assert titles == ["first"]

    async def test_session_rolls_back_on_error(self, database):
        with pytest.raises(RuntimeError):
            async with database.session() as session:
                session.add(NoteORM(title="lost"))
                await session.flush()
                raise RuntimeError("boom")

        async with database.session_factory() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM common_test_notes"))).scalar()

        assert count == 0

    def test_sqlite_engine_skips_pool_sizing(self, tmp_path):
        database = Database(DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/x.db"))

        assert database._engine_kwargs() == {"echo": False}


class TestBaseRepository:
    async def test_crud(self, database):
        async with database.session_factory() as session, session.begin():
            repository = NoteRepository(session)
            note = NoteORM(title="draft", workspace_id="ws-1")
            note.set_created_by("user-1")
            saved = await repository.add(note)

            assert saved.created_at is not None
            assert saved.is_in_workspace("ws-1")
            assert saved.to_dict()["created_by"] == "user-1"

        async with database.session_factory() as session, session.begin():
            repository = NoteRepository(session)

            assert (await repository.get_by_id(saved.id)).title == "draft"
            assert await repository.list_where(NoteORM.workspace_id == "ws-2") == []
            assert await repository.delete(saved.id) is True
            assert await repository.delete(uuid4()) is False

    async def test_list_where_orders_and_limits(self, database):
        async with database.session_factory() as session, session.begin():
            repository = NoteRepository(session)
            for title in ("b", "c", "a"):
                await repository.add(NoteORM(title=title))

            notes = await repository.list_where(order_by=NoteORM.title, limit=2)

        assert [note.title for note in notes] == ["a", "b"]
