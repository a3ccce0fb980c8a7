"""Shared fixtures: isolated config, fake SSH transport, file-backed lock registry."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from taste_tester.config import TasteTesterConfig
from taste_tester.hooks import Hooks
from taste_tester.locks import SqliteLockRegistry
from taste_tester.models import Changeset
from taste_tester.repo import Repo
from taste_tester.server import ServerHandle
from taste_tester.transport import RemoteResult, SSHTransport

GIT_ENV_ARGS = ["-c", "user.name=test", "-c", "user.email=test@test.com"]


class FakeTransport(SSHTransport):
	"""Records remote commands; hosts in ``failing`` return a non-zero status."""

	def __init__(self, config: TasteTesterConfig, failing: set[str] | None = None) -> None:
		super().__init__(config.hosts)
		self.failing = failing or set()
		self.commands: list[tuple[str, str]] = []

	async def run(self, hostname: str, command: str, timeout: int | None = None) -> RemoteResult:
		self.commands.append((hostname, command))
		if hostname in self.failing:
			return RemoteResult(returncode=255, output=f"ssh: connect to host {hostname}: Connection refused")
		return RemoteResult(returncode=0, output="")

	def commands_for(self, hostname: str) -> list[str]:
		return [cmd for host, cmd in self.commands if host == hostname]


class RecordingHooks(Hooks):
	def __init__(self) -> None:
		self.calls: list[tuple[str, tuple]] = []

	def pre_test(self, dryrun: bool, repo: Repo | None, hosts: list[str]) -> None:
		self.calls.append(("pre_test", (dryrun, repo, list(hosts))))

	def post_test(self, dryrun: bool, repo: Repo | None, hosts: list[str]) -> None:
		self.calls.append(("post_test", (dryrun, repo, list(hosts))))

	def impact_find_roles(self, changeset: Changeset) -> list[str]:
		self.calls.append(("impact_find_roles", (changeset,)))
		return super().impact_find_roles(changeset)

	def names(self) -> list[str]:
		return [name for name, _ in self.calls]


@pytest.fixture()
def config(tmp_path: Path) -> TasteTesterConfig:
	cfg = TasteTesterConfig()
	cfg.server.state_dir = str(tmp_path / "state")
	cfg.server.advertise_host = "workstation.example.com"
	cfg.repo.path = str(tmp_path / "repo")
	cfg.locks.backend = "sqlite"
	cfg.locks.path = str(tmp_path / "locks.db")
	cfg.options.user = "alice"
	return cfg


@pytest.fixture()
def server(config: TasteTesterConfig) -> ServerHandle:
	return ServerHandle(config.server, config.options.resolved_user)


@pytest.fixture()
def transport(config: TasteTesterConfig) -> FakeTransport:
	return FakeTransport(config)


@pytest.fixture()
def locks(config: TasteTesterConfig) -> SqliteLockRegistry:
	return SqliteLockRegistry(config.locks.path)


@pytest.fixture()
def hooks() -> RecordingHooks:
	return RecordingHooks()


def git(repo: Path, *args: str) -> str:
	result = subprocess.run(
		["git", *GIT_ENV_ARGS, *args], cwd=str(repo), check=True, capture_output=True, text=True,
	)
	return result.stdout


def write(path: Path, content: str) -> None:
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(content)


@pytest.fixture()
def chef_repo(tmp_path: Path) -> Path:
	"""A committed git chef repo with one cookbook, two roles and a databag."""
	repo = tmp_path / "repo"
	repo.mkdir()
	subprocess.run(["git", "init", "-q", str(repo)], check=True, capture_output=True)
	write(repo / "cookbooks" / "nginx" / "recipes" / "default.rb", "package 'nginx'\n")
	write(repo / "cookbooks" / "mysql" / "recipes" / "default.rb", "package 'mysql'\n")
	write(
		repo / "roles" / "web.json",
		'{"name": "web", "run_list": ["recipe[nginx::default]"]}\n',
	)
	write(
		repo / "roles" / "db.json",
		'{"name": "db", "run_list": ["recipe[mysql]"]}\n',
	)
	write(repo / "databags" / "users" / "alice.json", '{"id": "alice"}\n')
	write(repo / "README.md", "# chef\n")
	git(repo, "add", ".")
	git(repo, "commit", "-q", "-m", "Initial commit")
	return repo
