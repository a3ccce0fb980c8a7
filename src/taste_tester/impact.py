"""Work out which roles a working-copy change can affect."""

from __future__ import annotations

import logging

from taste_tester.changeset import find_changeset
from taste_tester.config import TasteTesterConfig
from taste_tester.constants import EXIT_FAILURE, EXIT_OK
from taste_tester.hooks import Hooks
from taste_tester.models import Changeset
from taste_tester.repo import Repo, open_repo

logger = logging.getLogger(__name__)


def print_impact(roles: list[str]) -> None:
	if not roles:
		print("No impacted roles were found.")
		return
	print(
		"The following roles have modified dependencies. "
		"Please test a host in each of these roles."
	)
	for role in roles:
		print(f"\t{role}")


class ImpactAnalyzer:
	"""Compare the working copy with a reference and report impacted roles."""

	def __init__(self, config: TasteTesterConfig, hooks: Hooks) -> None:
		self.config = config
		self.hooks = hooks

	async def find_changeset(self, repo: Repo) -> Changeset:
		repo_cfg = self.config.repo
		start_ref = await repo.resolve_start_ref(repo_cfg)
		return await find_changeset(
			repo,
			start_ref,
			repo_cfg.vcs_end_ref or None,
			repo_cfg.dir_filters,
			repo_cfg.track_symlinks,
		)

	async def impact(self) -> int:
		if self.config.options.json:
			logger.error("JSON output format is not yet implemented")
			return EXIT_FAILURE

		repo = open_repo(self.config.repo)
		changeset = await self.find_changeset(repo)

		impacted = self.hooks.impact_find_roles(changeset)
		final = list(dict.fromkeys(self.hooks.post_impact(list(impacted))))

		if not self.hooks.print_impact(final):
			print_impact(final)
		return EXIT_OK
