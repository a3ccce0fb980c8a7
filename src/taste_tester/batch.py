"""Drive host sessions across a list of hosts and aggregate the outcome."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from taste_tester.constants import OUTCOME_ERROR, OUTCOME_LOCK_CONFLICT
from taste_tester.exceptions import HostBatchError
from taste_tester.hooks import Hooks
from taste_tester.host import HostSession
from taste_tester.models import BatchResult, HostOutcome
from taste_tester.repo import Repo

logger = logging.getLogger(__name__)

HostOperation = Callable[[HostSession], Awaitable[HostOutcome]]


def _report(operation: str, outcomes: list[HostOutcome]) -> None:
	for outcome in outcomes:
		if outcome.status == OUTCOME_LOCK_CONFLICT:
			logger.error("User %s is already testing on %s", outcome.owner, outcome.hostname)
		elif outcome.status == OUTCOME_ERROR:
			logger.error("%s failed on %s: %s", operation, outcome.hostname, outcome.message)
		else:
			logger.info("%s on %s: %s", operation, outcome.hostname, outcome.message or "ok")


class BatchCoordinator:
	"""Runs one host operation per host with bounded concurrency.

	Hosts are independent: the aggregate is computed from set membership of
	the outcomes, never from completion order.
	"""

	def __init__(
		self,
		session_factory: Callable[[str], HostSession],
		hooks: Hooks,
		concurrency: int = 1,
	) -> None:
		self.session_factory = session_factory
		self.hooks = hooks
		self.concurrency = max(1, concurrency)

	async def _each(self, hosts: list[str], operation: HostOperation) -> list[HostOutcome]:
		semaphore = asyncio.Semaphore(self.concurrency)

		async def _one(hostname: str) -> HostOutcome:
			async with semaphore:
				return await operation(self.session_factory(hostname))

		unique = list(dict.fromkeys(hosts))
		return list(await asyncio.gather(*(_one(h) for h in unique)))

	async def test(
		self,
		hosts: list[str],
		repo: Repo | None,
		*,
		dryrun: bool = False,
		run_pre_hook: bool = True,
		run_post_hook: bool = True,
	) -> BatchResult:
		"""Put hosts into test mode.

		Lock conflicts only exclude that host from the result. Any other
		per-host failure aborts the batch with HostBatchError, before the
		post-test hook runs.
		"""
		if run_pre_hook:
			self.hooks.pre_test(dryrun, repo, hosts)

		outcomes = await self._each(hosts, lambda session: session.test())
		_report("test", outcomes)

		errors = [o for o in outcomes if o.status == OUTCOME_ERROR]
		if errors:
			raise HostBatchError(
				"; ".join(f"{o.hostname}: {o.message}" for o in errors)
			)

		result = BatchResult.from_outcomes(hosts, outcomes)
		tested = [h for h in dict.fromkeys(hosts) if h in result.succeeded]
		if run_post_hook:
			self.hooks.post_test(dryrun, repo, tested)
		return result

	async def untest(self, hosts: list[str]) -> BatchResult:
		outcomes = await self._each(hosts, lambda session: session.untest())
		_report("untest", outcomes)
		return BatchResult.from_outcomes(hosts, outcomes)

	async def runchef(self, hosts: list[str]) -> BatchResult:
		outcomes = await self._each(hosts, lambda session: session.run())
		_report("runchef", outcomes)
		return BatchResult.from_outcomes(hosts, outcomes)

	async def keeptesting(self, hosts: list[str]) -> BatchResult:
		outcomes = await self._each(hosts, lambda session: session.keeptesting())
		_report("keeptesting", outcomes)
		return BatchResult.from_outcomes(hosts, outcomes)
