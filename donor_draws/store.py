"""
Per-guild JSON document store.

Each guild lives in ``<data_dir>/<guild_id>.json``. Before every overwrite the
previous file is copied to ``<guild_id>_backup_<epoch_ms>.json`` and only the
newest ``max_backups`` copies are kept. A document that fails to parse is
restored from the newest readable backup, and failing that, regenerated from
the defaults.

All mutations of a guild's document must happen inside ``locked(guild_id)``,
which serializes load -> mutate -> save per guild.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List

from .errors import StoreUnavailable
from .models import Document, default_document

log = logging.getLogger(__name__)


class DocumentStore:
    def __init__(self, data_dir: Path | str, max_backups: int = 5):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max(1, int(max_backups))
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _path(self, guild_id) -> Path:
        return self.data_dir / f"{guild_id}.json"

    def _backup_prefix(self, guild_id) -> str:
        return f"{guild_id}_backup_"

    def _backup_files(self, guild_id) -> List[Path]:
        """Backups for a guild, oldest first."""
        prefix = self._backup_prefix(guild_id)
        files = [p for p in self.data_dir.glob(f"{prefix}*.json")]

        def stamp(p: Path) -> int:
            try:
                return int(p.stem[len(prefix):])
            except ValueError:
                return 0

        return sorted(files, key=stamp)

    def _read(self, path: Path) -> Document:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Document.from_dict(data)

    def _write(self, path: Path, document: Document) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(document.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _bootstrap(self, guild_id) -> Document:
        doc = default_document()
        path = self._path(guild_id)
        for attempt in (1, 2):
            try:
                self._write(path, doc)
                log.info("Created default document for guild %s", guild_id)
                return doc
            except OSError as e:
                log.error("Writing default document for guild %s failed (attempt %d): %s", guild_id, attempt, e)
        raise StoreUnavailable(f"cannot initialise document for guild {guild_id}")

    def load(self, guild_id) -> Document:
        path = self._path(guild_id)
        if not path.exists():
            return self._bootstrap(guild_id)
        try:
            return self._read(path)
        except Exception as e:
            log.error("Error reading document for guild %s: %s", guild_id, e)

        for backup in reversed(self._backup_files(guild_id)):
            try:
                doc = self._read(backup)
            except Exception as e:
                log.warning("Backup %s is unreadable: %s", backup.name, e)
                continue
            try:
                self._write(path, doc)
            except OSError as e:
                log.error("Could not write restored document for guild %s: %s", guild_id, e)
            log.info("Restored document for guild %s from backup %s", guild_id, backup.name)
            return doc

        log.warning("No usable backup for guild %s; regenerating defaults", guild_id)
        return self._bootstrap(guild_id)

    def save(self, guild_id, document: Document) -> bool:
        path = self._path(guild_id)
        try:
            if path.exists():
                self._copy_backup(guild_id)
                self._prune_backups(guild_id)
            self._write(path, document)
            return True
        except OSError as e:
            log.error("Error saving document for guild %s: %s", guild_id, e)
            return False

    def _copy_backup(self, guild_id) -> Path:
        stamp = int(time.time() * 1000)
        target = self.data_dir / f"{self._backup_prefix(guild_id)}{stamp}.json"
        # two saves within the same millisecond must not clobber each other
        while target.exists():
            stamp += 1
            target = self.data_dir / f"{self._backup_prefix(guild_id)}{stamp}.json"
        shutil.copyfile(self._path(guild_id), target)
        return target

    def _prune_backups(self, guild_id) -> None:
        backups = self._backup_files(guild_id)
        for old in backups[: max(0, len(backups) - self.max_backups)]:
            try:
                old.unlink()
            except OSError as e:
                log.debug("Could not remove old backup %s: %s", old.name, e)

    def create_backup(self, guild_id) -> bool:
        if not self._path(guild_id).exists():
            return False
        try:
            target = self._copy_backup(guild_id)
            self._prune_backups(guild_id)
        except OSError as e:
            log.error("Error creating backup for guild %s: %s", guild_id, e)
            return False
        log.info("Created backup for guild %s: %s", guild_id, target.name)
        return True

    def list_backups(self, guild_id) -> List[dict]:
        """Newest first: ``{"file", "timestamp"}`` with the timestamp in seconds."""
        prefix = self._backup_prefix(guild_id)
        out = []
        for p in reversed(self._backup_files(guild_id)):
            try:
                ts = int(p.stem[len(prefix):]) / 1000.0
            except ValueError:
                continue
            out.append({"file": p.name, "timestamp": ts})
        return out

    def restore_backup(self, guild_id, backup_file: str) -> bool:
        source = self.data_dir / Path(backup_file).name
        if not source.name.startswith(self._backup_prefix(guild_id)) or not source.exists():
            return False
        try:
            doc = self._read(source)
        except Exception as e:
            log.error("Refusing to restore unreadable backup %s: %s", source.name, e)
            return False
        # the source may be pruned by the safety backup below
        self.create_backup(guild_id)
        try:
            self._write(self._path(guild_id), doc)
        except OSError as e:
            log.error("Error restoring backup for guild %s: %s", guild_id, e)
            return False
        log.info("Restored document for guild %s from backup %s", guild_id, source.name)
        return True

    @asynccontextmanager
    async def locked(self, guild_id) -> AsyncIterator[Document]:
        """Hold the guild's lock and yield a freshly loaded document.

        The caller saves explicitly; an exception inside the block discards
        the in-memory changes.
        """
        async with self._locks[str(guild_id)]:
            yield self.load(guild_id)
