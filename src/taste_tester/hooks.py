"""Site-specific extension points.

A plugin is a Python file that defines a module-level ``hooks`` object,
typically an instance of a ``Hooks`` subclass overriding only what it needs::

	from taste_tester.hooks import Hooks

	class SiteHooks(Hooks):
		def post_impact(self, roles):
			return [host for role in roles for host in lookup_hosts(role)]

	hooks = SiteHooks()
"""

from __future__ import annotations

import importlib.util
import json
import logging
import re
from pathlib import Path

from taste_tester.exceptions import UsageError
from taste_tester.models import Changeset
from taste_tester.repo import Repo

logger = logging.getLogger(__name__)


class Hooks:
	"""Default behaviour for every hook."""

	def pre_test(self, dryrun: bool, repo: Repo | None, hosts: list[str]) -> None:
		"""Called once before any host is put into test mode."""

	def post_test(self, dryrun: bool, repo: Repo | None, hosts: list[str]) -> None:
		"""Called once with the hosts that were successfully put into test mode."""

	def impact_find_roles(self, changeset: Changeset) -> list[str]:
		"""Roles changed directly, plus roles whose run list reaches a changed
		cookbook or changed role, following nested ``role[...]`` entries.

		Roles are named by file stem throughout, matching how changed role
		files are classified.
		"""
		roles = set(changeset.roles)
		if (changeset.cookbooks or roles) and changeset.repo_path:
			role_dir = Path(changeset.repo_path) / changeset.dir_filters.role_dir
			roles |= _roles_reaching(role_dir, changeset.cookbooks, frozenset(roles))
		return sorted(roles)

	def post_impact(self, roles: list[str]) -> list[str]:
		return roles

	def print_impact(self, roles: list[str]) -> bool:
		"""Return True to suppress the default report."""
		return False


_RUN_LIST_ENTRY = re.compile(r"\b(recipe|role)\[([^\]]+)\]")


def _parse_run_list_entry(entry: str) -> tuple[str, str] | None:
	"""Split ``recipe[cookbook::recipe@version]`` or ``role[name]`` into (kind, name).

	For recipes the name is the cookbook.
	"""
	match = _RUN_LIST_ENTRY.fullmatch(entry.strip())
	if match is None:
		return None
	kind, name = match.groups()
	if kind == "recipe":
		name = name.split("::", 1)[0].split("@", 1)[0]
	return kind, name


def _json_run_list(role_file: Path) -> list[str]:
	data = json.loads(role_file.read_text(encoding="utf-8"))
	if not isinstance(data, dict):
		return []
	entries = list(data.get("run_list") or [])
	for env_run_list in (data.get("env_run_lists") or {}).values():
		entries.extend(env_run_list)
	return [e for e in entries if isinstance(e, str)]


def _ruby_run_list(role_file: Path) -> list[str]:
	# Role DSL files are not evaluated; any quoted recipe[]/role[] counts
	text = role_file.read_text(encoding="utf-8")
	return [match.group(0) for match in _RUN_LIST_ENTRY.finditer(text)]


def _role_references(role_dir: Path) -> dict[str, tuple[set[str], set[str]]]:
	"""Map each role (by file stem) to the cookbooks and roles its run lists name."""
	references: dict[str, tuple[set[str], set[str]]] = {}
	if not role_dir.is_dir():
		return references
	for role_file in sorted(role_dir.iterdir()):
		if role_file.suffix not in (".json", ".rb") or not role_file.is_file():
			continue
		try:
			if role_file.suffix == ".json":
				entries = _json_run_list(role_file)
			else:
				entries = _ruby_run_list(role_file)
		except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
			logger.warning("Skipping unreadable role %s: %s", role_file, exc)
			continue
		cookbooks, roles = references.setdefault(role_file.stem, (set(), set()))
		for entry in entries:
			parsed = _parse_run_list_entry(entry)
			if parsed is None:
				continue
			kind, name = parsed
			(cookbooks if kind == "recipe" else roles).add(name)
	return references


def _roles_reaching(role_dir: Path, cookbooks: frozenset[str], changed_roles: frozenset[str]) -> set[str]:
	"""Roles whose run list, directly or through nested roles, uses a change."""
	references = _role_references(role_dir)
	found = {name for name, (used, _) in references.items() if used & cookbooks}
	while True:
		reached = found | changed_roles
		added = {
			name for name, (_, nested) in references.items()
			if name not in found and nested & reached
		}
		if not added:
			return found
		found |= added


def load_hooks(plugin_path: str | None) -> Hooks:
	"""Import a plugin file and return its ``hooks`` object, or the defaults."""
	if not plugin_path:
		return Hooks()
	path = Path(plugin_path).expanduser()
	if not path.is_file():
		raise UsageError(f"Hooks plugin not found: {path}")

	spec = importlib.util.spec_from_file_location("taste_tester_plugin", path)
	if spec is None or spec.loader is None:
		raise UsageError(f"Cannot load hooks plugin {path}")
	module = importlib.util.module_from_spec(spec)
	spec.loader.exec_module(module)

	hooks = getattr(module, "hooks", None)
	if hooks is None:
		raise UsageError(f"Hooks plugin {path} does not define 'hooks'")
	logger.debug("Loaded hooks from %s", path)
	return hooks
