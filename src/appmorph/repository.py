from __future__ import annotations

import json
import os
from pathlib import Path
import tempfile
from threading import RLock
from typing import Protocol

from appmorph.domain.models import ChainEntry, ChainEntryStatus, utc_now_iso
from appmorph.errors import PersistenceCorrupt
from appmorph.observability import get_logger

_log = get_logger('appmorph.repository')


class ChainStore(Protocol):
    def add_entry(self, entry: ChainEntry) -> ChainEntry:
        ...

    def get_entry(self, session_id: str) -> ChainEntry | None:
        ...

    def list_entries(self) -> list[ChainEntry]:
        ...

    def get_chain(self, user_id: str) -> list[ChainEntry]:
        """Active entries for *user_id* ordered by chain position."""
        ...

    def get_head(self, user_id: str) -> ChainEntry | None:
        ...

    def rollback_to_position(self, user_id: str, target_position: int) -> list[ChainEntry]:
        """Mark active entries above *target_position* rolled back.

        ``-1`` rolls back the whole chain. Returns the entries that changed.
        """
        ...

    def delete_rolled_back(self, user_id: str) -> list[str]:
        ...


def entry_from_record(raw: dict) -> ChainEntry:
    status_text = str(raw.get('status') or ChainEntryStatus.ACTIVE.value).strip().lower()
    try:
        status = ChainEntryStatus(status_text)
    except ValueError:
        status = ChainEntryStatus.ACTIVE
    parent = raw.get('parent_session_id')
    return ChainEntry(
        session_id=str(raw['session_id']),
        appmorph_user_id=str(raw.get('appmorph_user_id') or ''),
        prompt=str(raw.get('prompt') or ''),
        created_at=str(raw.get('created_at') or utc_now_iso()),
        chain_position=int(raw.get('chain_position', 0)),
        parent_session_id=str(parent) if parent else None,
        status=status,
    )


def migrate_legacy_records(records: list[dict]) -> tuple[list[dict], bool]:
    """Assign chain metadata to records written before chains existed.

    Users whose records all carry ``chain_position`` are left alone. For any
    other user every record is renumbered by ``created_at``; the sort is
    stable so equal timestamps keep their file order.
    """
    by_user: dict[str, list[int]] = {}
    for index, raw in enumerate(records):
        by_user.setdefault(str(raw.get('appmorph_user_id') or ''), []).append(index)

    out = [dict(raw) for raw in records]
    changed = False
    for indexes in by_user.values():
        if all('chain_position' in records[i] for i in indexes):
            continue
        ordered = sorted(indexes, key=lambda i: str(records[i].get('created_at') or ''))
        parent: str | None = None
        for position, index in enumerate(ordered):
            row = out[index]
            row['chain_position'] = position
            row['parent_session_id'] = parent
            row['status'] = ChainEntryStatus.ACTIVE.value
            parent = str(row.get('session_id'))
        changed = True
    return out, changed


class _EntryListStore:
    """Chain operations over an ordered in-process list of entries."""

    def __init__(self):
        self._lock = RLock()
        self._entries: list[ChainEntry] = []

    def _persist(self, entries: list[ChainEntry]) -> None:
        return None

    def _commit(self, entries: list[ChainEntry]) -> None:
        self._persist(entries)
        self._entries = entries

    def add_entry(self, entry: ChainEntry) -> ChainEntry:
        with self._lock:
            if any(item.session_id == entry.session_id for item in self._entries):
                raise ValueError(f'duplicate session_id: {entry.session_id}')
            self._commit([*self._entries, entry])
        return entry

    def get_entry(self, session_id: str) -> ChainEntry | None:
        with self._lock:
            for item in self._entries:
                if item.session_id == session_id:
                    return item
        return None

    def list_entries(self) -> list[ChainEntry]:
        with self._lock:
            return list(self._entries)

    def get_chain(self, user_id: str) -> list[ChainEntry]:
        with self._lock:
            active = [
                item for item in self._entries
                if item.appmorph_user_id == user_id and item.is_active
            ]
        return sorted(active, key=lambda item: item.chain_position)

    def get_head(self, user_id: str) -> ChainEntry | None:
        chain = self.get_chain(user_id)
        return chain[-1] if chain else None

    def rollback_to_position(self, user_id: str, target_position: int) -> list[ChainEntry]:
        target = int(target_position)
        changed: list[ChainEntry] = []
        with self._lock:
            updated: list[ChainEntry] = []
            for item in self._entries:
                if item.appmorph_user_id == user_id and item.is_active and item.chain_position > target:
                    item = ChainEntry(
                        session_id=item.session_id,
                        appmorph_user_id=item.appmorph_user_id,
                        prompt=item.prompt,
                        created_at=item.created_at,
                        chain_position=item.chain_position,
                        parent_session_id=item.parent_session_id,
                        status=ChainEntryStatus.ROLLED_BACK,
                    )
                    changed.append(item)
                updated.append(item)
            if changed:
                self._commit(updated)
        return sorted(changed, key=lambda item: item.chain_position)

    def delete_rolled_back(self, user_id: str) -> list[str]:
        with self._lock:
            removed = [
                item.session_id for item in self._entries
                if item.appmorph_user_id == user_id and not item.is_active
            ]
            if removed:
                self._commit([
                    item for item in self._entries
                    if not (item.appmorph_user_id == user_id and not item.is_active)
                ])
        return removed


class InMemoryChainStore(_EntryListStore):
    pass


class JsonChainStore(_EntryListStore):
    """Chain ledger persisted to a single ``{"tasks": [...]}`` JSON file."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._entries = self._load()

    def _load(self) -> list[ChainEntry]:
        if not self.path.exists():
            return []
        try:
            records = self._read_records()
        except PersistenceCorrupt as exc:
            _log.warning('chain ledger unreadable, starting empty path=%s reason=%s', self.path, exc)
            return []

        records, migrated = migrate_legacy_records(records)
        entries: list[ChainEntry] = []
        for raw in records:
            try:
                entries.append(entry_from_record(raw))
            except (KeyError, TypeError, ValueError):
                _log.warning('skipping malformed chain record path=%s record=%r', self.path, raw)
        if migrated:
            _log.info('migrated legacy chain records path=%s count=%s', self.path, len(entries))
            self._persist(entries)
        return entries

    def _read_records(self) -> list[dict]:
        try:
            raw = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as exc:
            raise PersistenceCorrupt(str(exc)) from exc
        if not isinstance(raw, dict) or not isinstance(raw.get('tasks'), list):
            raise PersistenceCorrupt('expected an object with a "tasks" list')
        return [item for item in raw['tasks'] if isinstance(item, dict)]

    def _persist(self, entries: list[ChainEntry]) -> None:
        payload = {'tasks': [item.to_record() for item in entries]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{self.path.name}.', suffix='.tmp', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, ensure_ascii=True, indent=2))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except Exception:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
