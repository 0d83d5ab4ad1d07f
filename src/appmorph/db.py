from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from appmorph.domain.models import ChainEntry, ChainEntryStatus


class Base(DeclarativeBase):
    pass


class ChainEntryEntity(Base):
    __tablename__ = 'chain_entries'

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    appmorph_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)
    chain_position: Mapped[int] = mapped_column(Integer(), nullable=False)
    parent_session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {}
        if str(url or '').strip().lower().startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


def _to_entry(row: ChainEntryEntity) -> ChainEntry:
    return ChainEntry(
        session_id=row.session_id,
        appmorph_user_id=row.appmorph_user_id,
        prompt=row.prompt,
        created_at=row.created_at,
        chain_position=int(row.chain_position),
        parent_session_id=row.parent_session_id,
        status=ChainEntryStatus(row.status),
    )


class SqlChainStore:
    def __init__(self, db: Database):
        self.db = db

    def add_entry(self, entry: ChainEntry) -> ChainEntry:
        with self.db.session() as session:
            session.add(
                ChainEntryEntity(
                    session_id=entry.session_id,
                    appmorph_user_id=entry.appmorph_user_id,
                    prompt=entry.prompt,
                    created_at=entry.created_at,
                    chain_position=entry.chain_position,
                    parent_session_id=entry.parent_session_id,
                    status=entry.status.value,
                )
            )
        return entry

    def get_entry(self, session_id: str) -> ChainEntry | None:
        with self.db.session() as session:
            row = session.get(ChainEntryEntity, session_id)
            return _to_entry(row) if row is not None else None

    def list_entries(self) -> list[ChainEntry]:
        with self.db.session() as session:
            rows = session.scalars(
                select(ChainEntryEntity).order_by(
                    ChainEntryEntity.appmorph_user_id.asc(),
                    ChainEntryEntity.chain_position.asc(),
                )
            ).all()
            return [_to_entry(row) for row in rows]

    def get_chain(self, user_id: str) -> list[ChainEntry]:
        with self.db.session() as session:
            rows = session.scalars(
                select(ChainEntryEntity)
                .where(
                    ChainEntryEntity.appmorph_user_id == user_id,
                    ChainEntryEntity.status == ChainEntryStatus.ACTIVE.value,
                )
                .order_by(ChainEntryEntity.chain_position.asc())
            ).all()
            return [_to_entry(row) for row in rows]

    def get_head(self, user_id: str) -> ChainEntry | None:
        with self.db.session() as session:
            row = session.scalars(
                select(ChainEntryEntity)
                .where(
                    ChainEntryEntity.appmorph_user_id == user_id,
                    ChainEntryEntity.status == ChainEntryStatus.ACTIVE.value,
                )
                .order_by(ChainEntryEntity.chain_position.desc())
                .limit(1)
            ).first()
            return _to_entry(row) if row is not None else None

    def rollback_to_position(self, user_id: str, target_position: int) -> list[ChainEntry]:
        with self.db.session() as session:
            predicate = (
                (ChainEntryEntity.appmorph_user_id == user_id)
                & (ChainEntryEntity.status == ChainEntryStatus.ACTIVE.value)
                & (ChainEntryEntity.chain_position > int(target_position))
            )
            rows = session.scalars(
                select(ChainEntryEntity).where(predicate).order_by(ChainEntryEntity.chain_position.asc())
            ).all()
            session_ids = [row.session_id for row in rows]
            if not session_ids:
                return []
            session.execute(
                update(ChainEntryEntity)
                .where(ChainEntryEntity.session_id.in_(session_ids))
                .values(status=ChainEntryStatus.ROLLED_BACK.value)
            )
            session.expire_all()
            changed = session.scalars(
                select(ChainEntryEntity)
                .where(ChainEntryEntity.session_id.in_(session_ids))
                .order_by(ChainEntryEntity.chain_position.asc())
            ).all()
            return [_to_entry(row) for row in changed]

    def delete_rolled_back(self, user_id: str) -> list[str]:
        with self.db.session() as session:
            predicate = (
                (ChainEntryEntity.appmorph_user_id == user_id)
                & (ChainEntryEntity.status == ChainEntryStatus.ROLLED_BACK.value)
            )
            session_ids = list(session.scalars(select(ChainEntryEntity.session_id).where(predicate)).all())
            if session_ids:
                session.execute(delete(ChainEntryEntity).where(predicate))
            return session_ids
