"""Tests for host test locks."""

from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from taste_tester.config import HostsConfig, TasteTesterConfig
from taste_tester.exceptions import HostCommandError
from taste_tester.locks import (
	RemoteLockRegistry,
	SqliteLockRegistry,
	decide_acquire,
	decide_refresh,
	make_lock_registry,
	parse_lock_reply,
)
from taste_tester.models import HostLock
from taste_tester.transport import RemoteResult, SSHTransport


def _expired_lock(hostname: str, owner: str) -> HostLock:
	past = datetime.now(timezone.utc) - timedelta(hours=1)
	return HostLock(
		hostname=hostname,
		owner=owner,
		acquired_at=(past - timedelta(hours=1)).isoformat(),
		expires_at=past.isoformat(),
	)


class TestDecisions:
	def test_acquire_free_host(self) -> None:
		claim = decide_acquire(None, "h1", "alice", 60)
		assert claim.acquired
		assert claim.lock.owner == "alice"

	def test_acquire_held_by_other(self) -> None:
		held = HostLock.new("h1", "bob", 60)
		claim = decide_acquire(held, "h1", "alice", 60)
		assert not claim.acquired
		assert claim.lock is held

	def test_acquire_own_lock_renews(self) -> None:
		claim = decide_acquire(HostLock.new("h1", "alice", 1), "h1", "alice", 60)
		assert claim.acquired

	def test_acquire_expired_lock_of_other(self) -> None:
		claim = decide_acquire(_expired_lock("h1", "bob"), "h1", "alice", 60)
		assert claim.acquired
		assert claim.lock.owner == "alice"

	def test_refresh_requires_existing_lock(self) -> None:
		claim = decide_refresh(None, "alice", 60)
		assert not claim.acquired
		assert claim.lock is None

	def test_refresh_other_owner(self) -> None:
		claim = decide_refresh(HostLock.new("h1", "bob", 60), "alice", 60)
		assert not claim.acquired
		assert claim.lock.owner == "bob"

	def test_refresh_expired_other_owner(self) -> None:
		claim = decide_refresh(_expired_lock("h1", "bob"), "alice", 60)
		assert not claim.acquired
		assert claim.lock is None


class TestSqliteLockRegistry:
	async def test_second_owner_is_refused(self, locks: SqliteLockRegistry) -> None:
		first = await locks.acquire("h1", "alice", 3600)
		second = await locks.acquire("h1", "bob", 3600)
		assert first.acquired
		assert not second.acquired
		assert second.lock.owner == "alice"
		assert (await locks.current("h1")).owner == "alice"

	async def test_hosts_are_independent(self, locks: SqliteLockRegistry) -> None:
		assert (await locks.acquire("h1", "alice", 3600)).acquired
		assert (await locks.acquire("h2", "bob", 3600)).acquired

	async def test_concurrent_acquire_has_one_winner(self, tmp_path: Path) -> None:
		path = tmp_path / "shared.db"
		registries = [SqliteLockRegistry(path) for _ in range(8)]
		claims = await asyncio.gather(*(
			registry.acquire("h1", f"user{i}", 3600) for i, registry in enumerate(registries)
		))
		winners = [c for c in claims if c.acquired]
		assert len(winners) == 1
		assert all(c.lock.owner == winners[0].lock.owner for c in claims)

	async def test_release_is_idempotent(self, locks: SqliteLockRegistry) -> None:
		await locks.acquire("h1", "alice", 3600)
		released = await locks.release("h1")
		assert released.owner == "alice"
		assert await locks.release("h1") is None
		assert await locks.current("h1") is None
		assert (await locks.acquire("h1", "bob", 3600)).acquired

	async def test_refresh_extends_own_lock(self, locks: SqliteLockRegistry) -> None:
		first = await locks.acquire("h1", "alice", 10)
		refreshed = await locks.refresh("h1", "alice", 3600)
		assert refreshed.acquired
		assert refreshed.lock.acquired_at == first.lock.acquired_at
		assert refreshed.lock.expires_at > first.lock.expires_at

	async def test_refresh_unlocked_host(self, locks: SqliteLockRegistry) -> None:
		claim = await locks.refresh("h1", "alice", 3600)
		assert not claim.acquired
		assert await locks.current("h1") is None

	async def test_state_shared_across_instances(self, tmp_path: Path) -> None:
		path = tmp_path / "shared.db"
		await SqliteLockRegistry(path).acquire("h1", "alice", 3600)
		claim = await SqliteLockRegistry(path).acquire("h1", "bob", 3600)
		assert not claim.acquired


class TestParseLockReply:
	def test_none(self) -> None:
		assert parse_lock_reply("h1", "NONE\n") == ("NONE", None)

	def test_held(self) -> None:
		status, lock = parse_lock_reply("h1", "some noise\nHELD bob 1700000000 1700003600\n")
		assert status == "HELD"
		assert lock.owner == "bob"
		assert lock.hostname == "h1"
		assert lock.expires_at.startswith("2023-11-14T")

	def test_empty_reply(self) -> None:
		with pytest.raises(HostCommandError, match="empty reply"):
			parse_lock_reply("h1", "")

	def test_garbage_reply(self) -> None:
		with pytest.raises(HostCommandError, match="unexpected lock reply"):
			parse_lock_reply("h1", "ERROR could not take lock guard")

	def test_malformed_epoch(self) -> None:
		with pytest.raises(HostCommandError, match="malformed"):
			parse_lock_reply("h1", "HELD bob soon later")


class LocalTransport(SSHTransport):
	"""Runs remote scripts with the local bash, so every 'host' shares this machine."""

	async def run(self, hostname: str, command: str, timeout: int | None = None) -> RemoteResult:
		proc = await asyncio.create_subprocess_exec(
			"bash", "-c", command,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
		)
		stdout, _ = await proc.communicate()
		return RemoteResult(returncode=proc.returncode, output=stdout.decode())


class ReplyTransport(SSHTransport):
	def __init__(self, reply: RemoteResult) -> None:
		super().__init__(HostsConfig())
		self.reply = reply
		self.scripts: list[str] = []

	async def run(self, hostname: str, command: str, timeout: int | None = None) -> RemoteResult:
		self.scripts.append(command)
		return self.reply


@pytest.mark.skipif(shutil.which("flock") is None, reason="flock(1) not installed")
class TestRemoteLockRegistry:
	@pytest.fixture()
	def registry(self, tmp_path: Path) -> RemoteLockRegistry:
		return RemoteLockRegistry(LocalTransport(HostsConfig()), str(tmp_path / "chef" / "taste-tester.lock"))

	async def test_acquire_and_conflict(self, registry: RemoteLockRegistry) -> None:
		first = await registry.acquire("h1", "alice", 3600)
		second = await registry.acquire("h1", "bob", 3600)
		assert first.acquired
		assert first.lock.owner == "alice"
		assert not second.acquired
		assert second.lock.owner == "alice"

	async def test_expired_lock_is_taken_over(self, registry: RemoteLockRegistry) -> None:
		await registry.acquire("h1", "alice", -1)
		claim = await registry.acquire("h1", "bob", 3600)
		assert claim.acquired
		assert claim.lock.owner == "bob"

	async def test_truncated_lock_file_stays_held(self, registry: RemoteLockRegistry) -> None:
		lock_file = Path(registry.lock_path)
		lock_file.parent.mkdir(parents=True)
		lock_file.write_text("bob\n")

		claim = await registry.acquire("h1", "alice", 3600)
		assert not claim.acquired
		assert claim.lock.owner == "bob"
		assert lock_file.read_text() == "bob\n"
		assert (await registry.acquire("h1", "bob", 3600)).acquired

	async def test_garbled_expiry_stays_held(self, registry: RemoteLockRegistry) -> None:
		lock_file = Path(registry.lock_path)
		lock_file.parent.mkdir(parents=True)
		lock_file.write_text("bob 1700000000 soon\n")

		claim = await registry.acquire("h1", "alice", 3600)
		assert not claim.acquired
		assert claim.lock.owner == "bob"

	async def test_concurrent_acquire_has_one_winner(self, registry: RemoteLockRegistry) -> None:
		claims = await asyncio.gather(*(registry.acquire("h1", f"user{i}", 3600) for i in range(6)))
		assert len([c for c in claims if c.acquired]) == 1

	async def test_refresh_and_release(self, registry: RemoteLockRegistry) -> None:
		assert not (await registry.refresh("h1", "alice", 3600)).acquired
		await registry.acquire("h1", "alice", 60)
		assert (await registry.refresh("h1", "alice", 3600)).acquired
		assert not (await registry.refresh("h1", "bob", 3600)).acquired

		released = await registry.release("h1")
		assert released.owner == "alice"
		assert await registry.release("h1") is None
		assert await registry.current("h1") is None


class TestRemoteLockRegistryReplies:
	async def test_ssh_failure_raises(self) -> None:
		transport = ReplyTransport(RemoteResult(returncode=255, output="Connection refused"))
		registry = RemoteLockRegistry(transport, "/etc/chef/taste-tester.lock")
		with pytest.raises(HostCommandError, match="Connection refused"):
			await registry.acquire("h1", "alice", 3600)

	async def test_script_carries_owner_and_path(self) -> None:
		transport = ReplyTransport(RemoteResult(output="ACQUIRED alice 1700000000 1700003600\n"))
		registry = RemoteLockRegistry(transport, "/etc/chef/taste-tester.lock")
		claim = await registry.acquire("h1", "alice", 900)
		assert claim.acquired
		assert claim.lock.owner == "alice"
		assert "lock=/etc/chef/taste-tester.lock" in transport.scripts[0]
		assert "$((now + 900))" in transport.scripts[0]


def test_make_lock_registry(config: TasteTesterConfig) -> None:
	transport = SSHTransport(config.hosts)
	assert isinstance(make_lock_registry(config, transport), SqliteLockRegistry)

	config.locks.backend = "remote"
	registry = make_lock_registry(config, transport)
	assert isinstance(registry, RemoteLockRegistry)
	assert registry.lock_path == "/etc/chef/taste-tester.lock"
