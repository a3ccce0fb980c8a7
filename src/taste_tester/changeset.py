"""Turn a VCS diff into cookbook/role/databag change buckets."""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath

from taste_tester.models import Changeset, DirFilters
from taste_tester.repo import Repo

logger = logging.getLogger(__name__)

ROLE_SUFFIXES = (".json", ".rb")


def _is_under(child: str, parent: str) -> bool:
	"""Check if child path is under parent directory."""
	child_parts = PurePosixPath(child).parts
	parent_parts = PurePosixPath(parent).parts
	if len(child_parts) <= len(parent_parts):
		return False
	return child_parts[:len(parent_parts)] == parent_parts


def _relative_parts(path: str, parent: str) -> tuple[str, ...]:
	return PurePosixPath(path).parts[len(PurePosixPath(parent).parts):]


def _normalize(path: str) -> str:
	return PurePosixPath(path.strip()).as_posix()


def in_scope(path: str, filters: DirFilters) -> bool:
	return any(_is_under(path, d) for d in filters.all_dirs)


def cookbook_name(path: str, filters: DirFilters) -> str | None:
	for cookbook_dir in filters.cookbook_dirs:
		if _is_under(path, cookbook_dir):
			parts = _relative_parts(path, cookbook_dir)
			if len(parts) >= 2:
				return parts[0]
	return None


def role_name(path: str, filters: DirFilters) -> str | None:
	if not _is_under(path, filters.role_dir):
		return None
	parts = _relative_parts(path, filters.role_dir)
	if len(parts) != 1:
		return None
	name = PurePosixPath(parts[0])
	if name.suffix not in ROLE_SUFFIXES:
		return None
	return name.stem


def databag_name(path: str, filters: DirFilters) -> str | None:
	if not _is_under(path, filters.databag_dir):
		return None
	parts = _relative_parts(path, filters.databag_dir)
	return parts[0] if len(parts) >= 2 else None


def symlink_map(root: Path, filters: DirFilters) -> dict[str, str]:
	"""Return {target_path: link_path} for symlinks inside the scoped directories.

	Both sides are repository-relative. Links pointing outside the repository
	are ignored.
	"""
	resolved_root = root.resolve()
	links: dict[str, str] = {}
	for scoped in filters.all_dirs:
		base = root / scoped
		if not base.is_dir():
			continue
		for dirpath, dirnames, filenames in os.walk(base, followlinks=False):
			for name in dirnames + filenames:
				candidate = Path(dirpath) / name
				if not candidate.is_symlink():
					continue
				try:
					target = candidate.resolve().relative_to(resolved_root)
					link = candidate.relative_to(root)
				except ValueError:
					logger.debug("Ignoring symlink %s pointing outside the repo", candidate)
					continue
				links[target.as_posix()] = link.as_posix()
	return links


def translate_symlinks(paths: set[str], links: dict[str, str]) -> set[str]:
	"""Map changes under a symlink target onto the path of the link."""
	translated: set[str] = set()
	for path in paths:
		for target, link in links.items():
			if path == target:
				translated.add(link)
			elif _is_under(path, target):
				rest = _relative_parts(path, target)
				translated.add(PurePosixPath(link, *rest).as_posix())
	return translated


async def find_changeset(
	repo: Repo,
	start_ref: str,
	end_ref: str | None,
	filters: DirFilters,
	track_symlinks: bool = False,
) -> Changeset:
	"""Diff repo between start_ref and end_ref and keep only scoped paths."""
	raw = await repo.changed_paths(start_ref, end_ref)
	paths = {_normalize(p) for p in raw if p.strip()}
	if track_symlinks:
		paths |= translate_symlinks(paths, symlink_map(repo.path, filters))

	scoped = frozenset(p for p in paths if in_scope(p, filters))
	logger.debug(
		"%d changed paths between %s and %s, %d in scope",
		len(paths), start_ref, end_ref or "working tree", len(scoped),
	)

	cookbooks = {cookbook_name(p, filters) for p in scoped}
	roles = {role_name(p, filters) for p in scoped}
	databags = {databag_name(p, filters) for p in scoped}
	return Changeset(
		start_ref=start_ref,
		end_ref=end_ref,
		changed_paths=scoped,
		dir_filters=filters,
		repo_path=str(repo.path),
		cookbooks=frozenset(c for c in cookbooks if c),
		roles=frozenset(r for r in roles if r),
		databags=frozenset(d for d in databags if d),
	)
