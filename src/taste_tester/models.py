"""Data models for taste-tester state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from taste_tester.constants import (
	EXIT_ALL_LOCKED,
	EXIT_OK,
	EXIT_PARTIAL,
	OUTCOME_ERROR,
	OUTCOME_LOCK_CONFLICT,
	OUTCOME_OK,
)


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _now_iso() -> str:
	return _now().isoformat()


def _parse_iso(value: str) -> datetime:
	parsed = datetime.fromisoformat(value)
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


@dataclass
class ServerState:
	"""Local chef server metadata, persisted between invocations."""

	port: int = 0
	running: bool = False
	last_upload_time: str | None = None
	latest_uploaded_ref: str | None = None

	def to_dict(self) -> dict[str, Any]:
		# running is checked live, never persisted
		data = asdict(self)
		data.pop("running")
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any]) -> ServerState:
		known = {"port", "last_upload_time", "latest_uploaded_ref"}
		filtered = {k: v for k, v in data.items() if k in known}
		return cls(**filtered)


@dataclass
class HostLock:
	"""An operator's claim on a host for a test session."""

	hostname: str = ""
	owner: str = ""
	acquired_at: str = field(default_factory=_now_iso)
	expires_at: str = ""

	@classmethod
	def new(cls, hostname: str, owner: str, ttl: int) -> HostLock:
		now = _now()
		return cls(
			hostname=hostname,
			owner=owner,
			acquired_at=now.isoformat(),
			expires_at=(now + timedelta(seconds=ttl)).isoformat(),
		)

	def is_expired(self, now: datetime | None = None) -> bool:
		if not self.expires_at:
			return False
		return (now or _now()) >= _parse_iso(self.expires_at)

	def extended(self, ttl: int) -> HostLock:
		return HostLock(
			hostname=self.hostname,
			owner=self.owner,
			acquired_at=self.acquired_at,
			expires_at=(_now() + timedelta(seconds=ttl)).isoformat(),
		)


@dataclass
class LockClaim:
	"""Result of a check-and-set against the lock registry.

	``lock`` is the lock now in force: ours when ``acquired`` is True,
	the other operator's otherwise, or None when nothing is held.
	"""

	acquired: bool = False
	lock: HostLock | None = None


@dataclass
class HostOutcome:
	"""Typed result of one per-host operation."""

	hostname: str = ""
	status: str = OUTCOME_OK  # ok/lock_conflict/error
	owner: str | None = None
	message: str = ""

	@classmethod
	def ok(cls, hostname: str, message: str = "") -> HostOutcome:
		return cls(hostname=hostname, status=OUTCOME_OK, message=message)

	@classmethod
	def lock_conflict(cls, hostname: str, owner: str) -> HostOutcome:
		return cls(
			hostname=hostname,
			status=OUTCOME_LOCK_CONFLICT,
			owner=owner,
			message=f"User {owner} is already testing on {hostname}",
		)

	@classmethod
	def error(cls, hostname: str, message: str) -> HostOutcome:
		return cls(hostname=hostname, status=OUTCOME_ERROR, message=message)

	@property
	def succeeded(self) -> bool:
		return self.status == OUTCOME_OK


@dataclass
class BatchResult:
	"""Which of the requested hosts ended up in the requested state."""

	requested: set[str] = field(default_factory=set)
	succeeded: set[str] = field(default_factory=set)
	outcomes: list[HostOutcome] = field(default_factory=list)

	@classmethod
	def from_outcomes(cls, hosts: list[str], outcomes: list[HostOutcome]) -> BatchResult:
		requested = set(hosts)
		succeeded = {o.hostname for o in outcomes if o.succeeded and o.hostname in requested}
		return cls(requested=requested, succeeded=succeeded, outcomes=list(outcomes))

	@property
	def exit_code(self) -> int:
		if self.succeeded == self.requested:
			return EXIT_OK
		if not self.succeeded:
			return EXIT_ALL_LOCKED
		return EXIT_PARTIAL


@dataclass(frozen=True)
class DirFilters:
	"""Repository-relative directories that scope a changeset."""

	cookbook_dirs: tuple[str, ...] = ("cookbooks",)
	role_dir: str = "roles"
	databag_dir: str = "databags"

	@property
	def all_dirs(self) -> tuple[str, ...]:
		return (*self.cookbook_dirs, self.role_dir, self.databag_dir)


@dataclass(frozen=True)
class Changeset:
	"""Scoped file changes between two revisions, bucketed by unit kind."""

	start_ref: str | None = None
	end_ref: str | None = None
	changed_paths: frozenset[str] = frozenset()
	dir_filters: DirFilters = field(default_factory=DirFilters)
	repo_path: str = ""
	cookbooks: frozenset[str] = frozenset()
	roles: frozenset[str] = frozenset()
	databags: frozenset[str] = frozenset()

	@property
	def empty(self) -> bool:
		return not self.changed_paths
