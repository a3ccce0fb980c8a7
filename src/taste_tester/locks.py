"""Host test locks shared between operators.

Every backend performs check-and-set atomically: the current owner is read and
the new claim written inside one critical section, so two operators can never
both observe a host as free and both claim it.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from taste_tester.config import TasteTesterConfig
from taste_tester.constants import LOCK_FILE
from taste_tester.exceptions import HostCommandError
from taste_tester.models import HostLock, LockClaim
from taste_tester.transport import SSHTransport

logger = logging.getLogger(__name__)


def decide_acquire(existing: HostLock | None, hostname: str, owner: str, ttl: int) -> LockClaim:
	"""Decide an acquire against the lock currently stored for hostname."""
	if existing is not None and existing.owner != owner and not existing.is_expired():
		return LockClaim(acquired=False, lock=existing)
	if existing is not None and existing.owner != owner:
		logger.info("Taking over expired lock on %s from %s", hostname, existing.owner)
	return LockClaim(acquired=True, lock=HostLock.new(hostname, owner, ttl))


def decide_refresh(existing: HostLock | None, owner: str, ttl: int) -> LockClaim:
	"""Decide a refresh: only the owner may extend, and only an existing lock."""
	if existing is None:
		return LockClaim(acquired=False, lock=None)
	if existing.owner == owner:
		return LockClaim(acquired=True, lock=existing.extended(ttl))
	if existing.is_expired():
		return LockClaim(acquired=False, lock=None)
	return LockClaim(acquired=False, lock=existing)


class LockRegistry(ABC):
	"""Where host locks live."""

	@abstractmethod
	async def acquire(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		"""Claim hostname for owner unless someone else holds a live lock."""

	@abstractmethod
	async def refresh(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		"""Extend owner's lock on hostname."""

	@abstractmethod
	async def release(self, hostname: str) -> HostLock | None:
		"""Drop the lock on hostname, returning what was released."""

	@abstractmethod
	async def current(self, hostname: str) -> HostLock | None:
		"""Return the stored lock on hostname, if any."""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS host_locks (
	hostname TEXT PRIMARY KEY,
	owner TEXT NOT NULL,
	acquired_at TEXT NOT NULL,
	expires_at TEXT NOT NULL
);
"""


class SqliteLockRegistry(LockRegistry):
	"""Lock table in a SQLite file on storage every operator can reach.

	Each operation opens its own connection and runs inside
	``BEGIN IMMEDIATE`` so the read and the write share one write lock.
	"""

	def __init__(self, path: str | Path) -> None:
		self.path = str(path)
		with closing(self._connect()) as conn:
			conn.executescript(SCHEMA_SQL)

	def _connect(self) -> sqlite3.Connection:
		conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
		conn.row_factory = sqlite3.Row
		return conn

	@staticmethod
	def _row_to_lock(row: sqlite3.Row | None) -> HostLock | None:
		if row is None:
			return None
		return HostLock(
			hostname=row["hostname"],
			owner=row["owner"],
			acquired_at=row["acquired_at"],
			expires_at=row["expires_at"],
		)

	def _transact(self, hostname: str, decide: Callable[[HostLock | None], LockClaim]) -> LockClaim:
		with closing(self._connect()) as conn:
			conn.execute("BEGIN IMMEDIATE")
			try:
				row = conn.execute("SELECT * FROM host_locks WHERE hostname=?", (hostname,)).fetchone()
				claim = decide(self._row_to_lock(row))
				if claim.acquired and claim.lock is not None:
					conn.execute(
						"""INSERT OR REPLACE INTO host_locks
						(hostname, owner, acquired_at, expires_at)
						VALUES (?, ?, ?, ?)""",
						(hostname, claim.lock.owner, claim.lock.acquired_at, claim.lock.expires_at),
					)
				conn.execute("COMMIT")
			except BaseException:
				conn.execute("ROLLBACK")
				raise
		return claim

	def _release(self, hostname: str) -> HostLock | None:
		with closing(self._connect()) as conn:
			conn.execute("BEGIN IMMEDIATE")
			try:
				row = conn.execute("SELECT * FROM host_locks WHERE hostname=?", (hostname,)).fetchone()
				conn.execute("DELETE FROM host_locks WHERE hostname=?", (hostname,))
				conn.execute("COMMIT")
			except BaseException:
				conn.execute("ROLLBACK")
				raise
		return self._row_to_lock(row)

	def _current(self, hostname: str) -> HostLock | None:
		with closing(self._connect()) as conn:
			row = conn.execute("SELECT * FROM host_locks WHERE hostname=?", (hostname,)).fetchone()
		return self._row_to_lock(row)

	async def acquire(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		return await asyncio.to_thread(
			self._transact, hostname, lambda existing: decide_acquire(existing, hostname, owner, ttl),
		)

	async def refresh(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		return await asyncio.to_thread(
			self._transact, hostname, lambda existing: decide_refresh(existing, owner, ttl),
		)

	async def release(self, hostname: str) -> HostLock | None:
		return await asyncio.to_thread(self._release, hostname)

	async def current(self, hostname: str) -> HostLock | None:
		return await asyncio.to_thread(self._current, hostname)


# The lock file holds "owner acquired_epoch expires_epoch". Everything after the
# flock runs while holding the guard, so read-then-write is atomic per host.
_REMOTE_PREAMBLE = """\
lock={lock}
mkdir -p "$(dirname "$lock")"
exec 9>>"$lock.guard"
flock -x -w 30 9 || {{ echo "ERROR could not take lock guard"; exit 1; }}
now=$(date +%s)
owner=""; acquired=0; expires=0
if [ -s "$lock" ]; then read -r owner acquired expires < "$lock"; fi
# A truncated or garbled record still names an owner; keep it held until released
case "$acquired" in ''|*[!0-9]*) acquired=0 ;; esac
case "$expires" in ''|*[!0-9]*) expires=9999999999 ;; esac
"""

_REMOTE_ACQUIRE = """\
if [ -n "$owner" ] && [ "$owner" != {owner} ] && [ "$expires" -gt "$now" ]; then
	echo "HELD $owner $acquired $expires"
else
	expires=$((now + {ttl}))
	echo {owner} "$now $expires" > "$lock"
	echo "ACQUIRED" {owner} "$now $expires"
fi
"""

_REMOTE_REFRESH = """\
if [ -n "$owner" ] && [ "$owner" = {owner} ]; then
	expires=$((now + {ttl}))
	echo "$owner $acquired $expires" > "$lock"
	echo "ACQUIRED $owner $acquired $expires"
elif [ -n "$owner" ] && [ "$expires" -gt "$now" ]; then
	echo "HELD $owner $acquired $expires"
else
	echo "NONE"
fi
"""

_REMOTE_RELEASE = """\
if [ -n "$owner" ]; then
	rm -f "$lock"
	echo "RELEASED $owner $acquired $expires"
else
	echo "NONE"
fi
"""

_REMOTE_CURRENT = """\
if [ -n "$owner" ]; then echo "HELD $owner $acquired $expires"; else echo "NONE"; fi
"""


def _epoch_iso(value: str) -> str:
	return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def parse_lock_reply(hostname: str, output: str) -> tuple[str, HostLock | None]:
	"""Parse the status line printed by a remote lock script."""
	lines = [line.strip() for line in output.splitlines() if line.strip()]
	if not lines:
		raise HostCommandError(hostname, "empty reply from lock script")
	fields = lines[-1].split()
	status = fields[0]
	if status == "NONE":
		return status, None
	if status in ("HELD", "ACQUIRED", "RELEASED") and len(fields) == 4:
		try:
			lock = HostLock(
				hostname=hostname,
				owner=fields[1],
				acquired_at=_epoch_iso(fields[2]),
				expires_at=_epoch_iso(fields[3]),
			)
		except ValueError as exc:
			raise HostCommandError(hostname, f"malformed lock reply {lines[-1]!r}") from exc
		return status, lock
	raise HostCommandError(hostname, f"unexpected lock reply {lines[-1]!r}")


class RemoteLockRegistry(LockRegistry):
	"""Lock file on the target host itself, guarded by flock(1).

	The host is the one resource every operator's tooling reaches, so the
	lock needs no central service.
	"""

	def __init__(self, transport: SSHTransport, lock_path: str) -> None:
		self.transport = transport
		self.lock_path = lock_path

	async def _run(self, hostname: str, body: str) -> tuple[str, HostLock | None]:
		script = _REMOTE_PREAMBLE.format(lock=shlex.quote(self.lock_path)) + body
		output = await self.transport.run_checked(hostname, script)
		return parse_lock_reply(hostname, output)

	async def acquire(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		status, lock = await self._run(
			hostname, _REMOTE_ACQUIRE.format(owner=shlex.quote(owner), ttl=int(ttl)),
		)
		return LockClaim(acquired=status == "ACQUIRED", lock=lock)

	async def refresh(self, hostname: str, owner: str, ttl: int) -> LockClaim:
		status, lock = await self._run(
			hostname, _REMOTE_REFRESH.format(owner=shlex.quote(owner), ttl=int(ttl)),
		)
		return LockClaim(acquired=status == "ACQUIRED", lock=lock)

	async def release(self, hostname: str) -> HostLock | None:
		_, lock = await self._run(hostname, _REMOTE_RELEASE)
		return lock

	async def current(self, hostname: str) -> HostLock | None:
		_, lock = await self._run(hostname, _REMOTE_CURRENT)
		return lock


def make_lock_registry(config: TasteTesterConfig, transport: SSHTransport) -> LockRegistry:
	if config.locks.backend == "sqlite":
		return SqliteLockRegistry(Path(config.locks.path).expanduser())
	lock_path = f"{config.hosts.chef_config_path.rstrip('/')}/{LOCK_FILE}"
	return RemoteLockRegistry(transport, lock_path)
