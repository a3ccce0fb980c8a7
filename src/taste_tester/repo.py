"""Version-control drivers for the chef repository.

One small class per VCS kind. They share a uniform surface so callers never
branch on the kind themselves: ``resolve_start_ref`` encodes the difference
between revision-numbered checkouts (svn) and branch-based ones (git, hg).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from taste_tester.config import RepoConfig
from taste_tester.exceptions import RepoUnavailableError, UsageError

logger = logging.getLogger(__name__)


def _split_nul(output: str) -> list[str]:
	"""Split NUL-terminated path output from ``-z``/``--print0``."""
	return [path for path in output.split("\0") if path]


class Repo(ABC):
	"""A working copy on local disk."""

	kind = ""
	marker = ""

	def __init__(self, path: Path) -> None:
		self.path = path

	def __repr__(self) -> str:
		return f"{type(self).__name__}({str(self.path)!r})"

	def exists(self) -> bool:
		return (self.path / self.marker).exists()

	async def _run(self, *args: str) -> tuple[bool, str]:
		"""Run a VCS command inside the working copy."""
		try:
			proc = await asyncio.create_subprocess_exec(
				*args,
				cwd=str(self.path),
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except FileNotFoundError:
			return (False, f"Command not found: {args[0]}")
		stdout, _ = await proc.communicate()
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode == 0, output)

	async def _run_checked(self, *args: str) -> str:
		ok, output = await self._run(*args)
		if not ok:
			raise RepoUnavailableError(f"{' '.join(args[:2])} failed in {self.path}: {output.strip()[:500]}")
		return output

	@abstractmethod
	async def head_rev(self) -> str | None:
		"""Revision the working copy is based on."""

	@abstractmethod
	async def latest_revision(self) -> str | None:
		"""Latest committed revision of the checkout."""

	@abstractmethod
	async def changed_paths(self, start_ref: str, end_ref: str | None) -> list[str]:
		"""Repository-relative paths changed between start_ref and end_ref (or the working tree)."""

	@abstractmethod
	async def resolve_start_ref(self, config: RepoConfig) -> str:
		"""Reference a changeset should be computed from."""


class GitRepo(Repo):
	kind = "git"
	marker = ".git"

	async def head_rev(self) -> str | None:
		ok, output = await self._run("git", "rev-parse", "HEAD")
		return output.strip() if ok else None

	async def latest_revision(self) -> str | None:
		return await self.head_rev()

	async def changed_paths(self, start_ref: str, end_ref: str | None) -> list[str]:
		# -z disables core.quotePath C-quoting of non-ASCII and special names
		args = ["git", "-c", "core.quotePath=false", "diff", "--no-renames", "--name-only", "-z", start_ref]
		if end_ref:
			args.append(end_ref)
		paths = _split_nul(await self._run_checked(*args))
		if not end_ref:
			untracked = await self._run_checked("git", "ls-files", "--others", "--exclude-standard", "-z")
			paths.extend(_split_nul(untracked))
		return paths

	async def resolve_start_ref(self, config: RepoConfig) -> str:
		return config.vcs_start_ref_git


class HgRepo(Repo):
	kind = "hg"
	marker = ".hg"

	async def head_rev(self) -> str | None:
		ok, output = await self._run("hg", "log", "-r", ".", "--template", "{node}")
		return output.strip() if ok else None

	async def latest_revision(self) -> str | None:
		return await self.head_rev()

	async def changed_paths(self, start_ref: str, end_ref: str | None) -> list[str]:
		args = ["hg", "status", "--no-status", "--print0", "--rev", start_ref]
		if end_ref:
			args.extend(["--rev", end_ref])
		return _split_nul(await self._run_checked(*args))

	async def resolve_start_ref(self, config: RepoConfig) -> str:
		return config.vcs_start_ref_hg


class SvnRepo(Repo):
	kind = "svn"
	marker = ".svn"

	async def head_rev(self) -> str | None:
		ok, output = await self._run("svn", "info", "--show-item", "revision")
		return output.strip() if ok else None

	async def latest_revision(self) -> str | None:
		ok, output = await self._run("svn", "info", "--show-item", "last-changed-revision")
		return output.strip() if ok else None

	async def changed_paths(self, start_ref: str, end_ref: str | None) -> list[str]:
		rev = f"{start_ref}:{end_ref}" if end_ref else start_ref
		output = await self._run_checked("svn", "diff", "--summarize", "-r", rev)
		paths: list[str] = []
		for line in output.splitlines():
			# Seven status columns, a space, then the path
			if len(line) > 8 and line[8:].strip():
				paths.append(line[8:].strip())
		return paths

	async def resolve_start_ref(self, config: RepoConfig) -> str:
		revision = await self.latest_revision()
		if not revision:
			raise RepoUnavailableError(f"Could not read latest revision of {self.path}")
		return revision


REPO_CLASSES: dict[str, type[Repo]] = {
	"git": GitRepo,
	"hg": HgRepo,
	"svn": SvnRepo,
}


def get_repo(repo_type: str, path: str | Path) -> Repo:
	"""Build the driver for repo_type; ``auto`` detects the VCS from marker directories."""
	repo_path = Path(path).expanduser()
	if repo_type == "auto":
		for cls in REPO_CLASSES.values():
			if (repo_path / cls.marker).exists():
				logger.debug("Detected %s repository at %s", cls.kind, repo_path)
				return cls(repo_path)
		# Nothing detected; git is the common case and exists() will report the problem
		return GitRepo(repo_path)
	cls = REPO_CLASSES.get(repo_type)
	if cls is None:
		raise UsageError(f"Unknown repo type {repo_type!r}")
	return cls(repo_path)


def open_repo(config: RepoConfig) -> Repo:
	"""Return a driver for an existing repository or raise RepoUnavailableError."""
	repo = get_repo(config.type, config.path)
	if not repo.exists():
		raise RepoUnavailableError(f"Could not open repo from {config.path}")
	return repo
