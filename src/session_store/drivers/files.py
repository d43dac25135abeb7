"""Filesystem session driver.

One file per session at ``<save_path>/<cookie_name>[<md5(ip)>]<session_id>``,
created with mode 0600. The open file handle carries an exclusive
``flock`` for the lifetime of the request; there is no separate lock
entry and no retry loop, the OS queues waiters.
"""

from __future__ import annotations

import asyncio
import fcntl
import hashlib
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import BinaryIO

from ..config import SessionConfig
from ..context import RequestContext
from ..result import DriverResult
from .base import BaseSessionDriver


class FilesDriver(BaseSessionDriver):
    """Session driver storing each session in its own locked file."""

    def __init__(
        self,
        config: SessionConfig,
        context: RequestContext | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(config, context, logger)
        if config.save_path:
            self._save_path = Path(config.save_path.rstrip("/\\") or "/")
        else:
            self._save_path = Path(tempfile.gettempdir())
        self._name = config.cookie_name
        self._path_prefix: str | None = None
        self._handle: BinaryIO | None = None
        self._is_new = False

    @property
    def save_path(self) -> Path:
        return self._save_path

    async def open(self, save_path: str | None, name: str) -> DriverResult:
        """Make sure the session directory exists and is writable."""
        path = Path(save_path) if save_path else self._save_path
        try:
            path.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            return self._fail(
                '"%s" is not a directory, doesn\'t exist or cannot be created: %s',
                path,
                exc,
            )

        if not os.access(path, os.W_OK):
            return self._fail('"%s" is not writable by the running process', path)

        self._save_path = path
        self._name = name
        ip_hash = ""
        if self._config.match_ip:
            ip_hash = hashlib.md5(self._client_ip().encode("utf-8")).hexdigest()
        self._path_prefix = os.path.join(path, f"{name}{ip_hash}")
        return DriverResult.success()

    def _file_path(self, session_id: str) -> str:
        assert self._path_prefix is not None
        return self._path_prefix + session_id

    async def read(self, session_id: str) -> DriverResult:
        """Open, lock and read the session file.

        The first call opens (creating if needed) and locks the file;
        later calls on the same handle rewind and re-read it.
        """
        if self._path_prefix is None:
            return self._fail("read() called before open()")

        path = self._file_path(session_id)

        if self._handle is None:
            self._is_new = not os.path.exists(path)
            try:
                fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as exc:
                return self._fail("Unable to open the session file %s: %s", path, exc)

            self._handle = os.fdopen(fd, "r+b")

            if not await self._acquire_lock(session_id):
                self._handle.close()
                self._handle = None
                return self._fail("Unable to acquire a lock for %s", path)

            self._initial_session_id = session_id

            if self._is_new:
                try:
                    os.chmod(path, 0o600)
                except OSError as exc:
                    self._logger.warning("Cannot chmod session file %s: %s", path, exc)
                self._fingerprint = self._checksum("")
                return DriverResult.success("")

        try:
            self._handle.seek(0)
            data = self._handle.read().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return self._fail("Unable to read the session file %s: %s", path, exc)

        self._fingerprint = self._checksum(data)
        return DriverResult.success(data)

    async def write(self, session_id: str, data: str) -> DriverResult:
        # Different ID than the one read: the session was regenerated
        if session_id != self._initial_session_id:
            if not await self.close():
                return self._fail("Unable to close the previous session file")
            result = await self.read(session_id)
            if not result:
                return result

        if self._handle is None:
            return self._fail("write() called without an open session file")

        path = self._file_path(session_id)
        checksum = self._checksum(data)

        if checksum == self._fingerprint:
            if not self._is_new:
                try:
                    os.utime(path, None)
                except OSError as exc:
                    return self._fail("Unable to touch the session file %s: %s", path, exc)
            return DriverResult.success()

        try:
            self._handle.seek(0)
            self._handle.truncate(0)
            self._handle.write(data.encode("utf-8"))
            self._handle.flush()
        except OSError as exc:
            self._fingerprint = self._checksum("")
            return self._fail("Unable to write session data to %s: %s", path, exc)

        self._fingerprint = checksum
        self._is_new = False
        return DriverResult.success()

    async def close(self) -> DriverResult:
        if self._handle is not None:
            await self._release_lock()
            self._handle.close()
            self._handle = None
            self._is_new = False
            self._initial_session_id = None

        return DriverResult.success()

    async def destroy(self, session_id: str) -> DriverResult:
        if self._path_prefix is None:
            return self._fail("destroy() called before open()")

        path = self._file_path(session_id)
        await self.close()
        self._destroy_cookie()

        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            return self._fail("Unable to delete the session file %s: %s", path, exc)

        return DriverResult.success()

    async def gc(self, max_lifetime: int) -> DriverResult:
        """Delete our session files not modified for ``max_lifetime`` seconds.

        Only names matching ``<cookie_name>[<ip hash>]<session id pattern>``
        are considered, so foreign files sharing the directory survive.
        The directory scan runs in a worker thread.
        """
        return await asyncio.to_thread(self._collect_garbage, max_lifetime)

    def _collect_garbage(self, max_lifetime: int) -> DriverResult:
        try:
            entries = list(os.scandir(self._save_path))
        except OSError as exc:
            return self._fail("gc couldn't list the directory %s: %s", self._save_path, exc)

        expiration_time = time.time() - max_lifetime
        ip_hash = "[0-9a-f]{32}" if self._config.match_ip else ""
        pattern = re.compile(re.escape(self._name) + ip_hash + self._config.sid_regexp)

        removed = 0
        for entry in entries:
            if not pattern.fullmatch(entry.name):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime > expiration_time:
                    continue
                os.unlink(entry.path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                self._logger.warning("gc could not remove %s: %s", entry.path, exc)
                continue
            removed += 1

        self._logger.debug("gc removed %d session file(s) from %s", removed, self._save_path)
        return DriverResult.success()

    async def _acquire_lock(self, session_id: str) -> bool:
        assert self._handle is not None
        # flock blocks until granted; keep the event loop free meanwhile
        try:
            await asyncio.to_thread(fcntl.flock, self._handle.fileno(), fcntl.LOCK_EX)
        except OSError as exc:
            self._logger.error("flock(LOCK_EX) failed for %s: %s", self._short(session_id), exc)
            return False
        return True

    async def _release_lock(self) -> bool:
        if self._handle is None:
            return True
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            self._logger.warning("flock(LOCK_UN) failed: %s", exc)
            return False
        return True
