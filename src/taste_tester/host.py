"""Per-host test session: lock, point at the local server, converge, revert."""

from __future__ import annotations

import logging
import shlex

from taste_tester.config import TasteTesterConfig
from taste_tester.constants import PROD_CONFIG, TEST_CONFIG
from taste_tester.exceptions import HostCommandError
from taste_tester.locks import LockRegistry
from taste_tester.models import HostOutcome
from taste_tester.server import ServerHandle
from taste_tester.transport import SSHTransport

logger = logging.getLogger(__name__)

TEST_CONFIG_TEMPLATE = """\
# Generated by taste-tester for {owner}. Revert with `taste-tester untest`.
instance_eval(File.read('{prod_config}'))
chef_server_url '{server_url}'
"""

LINK_SCRIPT = """\
set -e
cd {config_path}
if [ ! -e {prod} ] && [ -f {config} ] && [ ! -L {config} ]; then mv {config} {prod}; fi
cat > {test} <<'TASTE_TESTER_EOF'
{body}TASTE_TESTER_EOF
ln -sfn {test} {config}
"""

UNLINK_SCRIPT = """\
set -e
cd {config_path}
if [ -e {prod} ]; then ln -sfn {prod} {config}; fi
rm -f {test}
"""


class HostSession:
	"""Operations on one remote host on behalf of the current operator.

	Expected per-host conditions (lock held by someone else, a failing remote
	command) come back as a HostOutcome rather than an exception.
	"""

	def __init__(
		self,
		hostname: str,
		config: TasteTesterConfig,
		server: ServerHandle,
		transport: SSHTransport,
		locks: LockRegistry,
	) -> None:
		self.hostname = hostname
		self.config = config
		self.server = server
		self.transport = transport
		self.locks = locks
		self.owner = config.options.resolved_user

	def _script_args(self) -> dict[str, str]:
		hosts = self.config.hosts
		return {
			"config_path": shlex.quote(hosts.chef_config_path),
			"config": shlex.quote(hosts.chef_config),
			"prod": shlex.quote(PROD_CONFIG),
			"test": shlex.quote(TEST_CONFIG),
		}

	def render_test_config(self) -> str:
		prod_config = f"{self.config.hosts.chef_config_path.rstrip('/')}/{PROD_CONFIG}"
		return TEST_CONFIG_TEMPLATE.format(
			owner=self.owner,
			prod_config=prod_config,
			server_url=self.server.url,
		)

	async def test(self) -> HostOutcome:
		"""Claim the host and point its chef client at the local server."""
		ttl = self.config.hosts.testing_time
		try:
			claim = await self.locks.acquire(self.hostname, self.owner, ttl)
		except HostCommandError as exc:
			return HostOutcome.error(self.hostname, str(exc))

		if not claim.acquired:
			holder = claim.lock.owner if claim.lock is not None else "unknown"
			return HostOutcome.lock_conflict(self.hostname, holder)

		script = LINK_SCRIPT.format(body=self.render_test_config(), **self._script_args())
		try:
			await self.transport.run_checked(self.hostname, script)
		except HostCommandError as exc:
			await self._release_after_failure()
			return HostOutcome.error(self.hostname, str(exc))

		expires = claim.lock.expires_at if claim.lock is not None else ""
		logger.info("%s is now using %s (until %s)", self.hostname, self.server.url, expires)
		return HostOutcome.ok(self.hostname, f"testing until {expires}")

	async def _release_after_failure(self) -> None:
		try:
			await self.locks.release(self.hostname)
		except HostCommandError as exc:
			logger.warning("Could not release lock on %s after failed link: %s", self.hostname, exc)

	async def untest(self) -> HostOutcome:
		"""Restore the production chef config and drop the lock."""
		try:
			await self.transport.run_checked(self.hostname, UNLINK_SCRIPT.format(**self._script_args()))
			released = await self.locks.release(self.hostname)
		except HostCommandError as exc:
			return HostOutcome.error(self.hostname, str(exc))

		if released is not None and released.owner != self.owner:
			logger.warning("Ended %s's test session on %s", released.owner, self.hostname)
		logger.info("%s is back on its production chef server", self.hostname)
		return HostOutcome.ok(self.hostname, "untested")

	async def run(self) -> HostOutcome:
		"""Run one chef-client pass against whatever server the host is configured for."""
		logger.info("Running %s on %s", self.config.hosts.chef_client_command, self.hostname)
		result = await self.transport.run(self.hostname, self.config.hosts.chef_client_command)
		if not result.ok:
			tail = "\n".join(result.output.strip().splitlines()[-20:])
			return HostOutcome.error(self.hostname, f"chef run exited {result.returncode}:\n{tail}")
		return HostOutcome.ok(self.hostname, "chef run succeeded")

	async def keeptesting(self) -> HostOutcome:
		"""Push out the expiry of our lock without touching the host's config."""
		try:
			claim = await self.locks.refresh(self.hostname, self.owner, self.config.hosts.testing_time)
		except HostCommandError as exc:
			return HostOutcome.error(self.hostname, str(exc))

		if claim.acquired and claim.lock is not None:
			return HostOutcome.ok(self.hostname, f"testing until {claim.lock.expires_at}")
		if claim.lock is not None:
			return HostOutcome.lock_conflict(self.hostname, claim.lock.owner)
		return HostOutcome.error(self.hostname, "not in test mode")
