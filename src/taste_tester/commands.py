"""One method per CLI subcommand. Each returns the process exit status."""

from __future__ import annotations

import logging
import re
from typing import Callable

from taste_tester.batch import BatchCoordinator
from taste_tester.config import TasteTesterConfig
from taste_tester.constants import EXIT_FAILURE, EXIT_OK
from taste_tester.exceptions import FatalUploadError
from taste_tester.hooks import Hooks, load_hooks
from taste_tester.host import HostSession
from taste_tester.impact import ImpactAnalyzer
from taste_tester.locks import LockRegistry, make_lock_registry
from taste_tester.models import BatchResult
from taste_tester.repo import Repo, open_repo
from taste_tester.server import ServerHandle
from taste_tester.transport import SSHTransport
from taste_tester.upload import upload as run_upload

logger = logging.getLogger(__name__)

_AFFIRMATIVE = re.compile(r"y(es)?", re.IGNORECASE)


def confirm(question: str, prompt: Callable[[str], str] = input) -> bool:
	"""Ask a yes/no question; anything but y/yes is a no."""
	try:
		answer = prompt(question)
	except EOFError:
		return False
	return _AFFIRMATIVE.fullmatch(answer.strip()) is not None


def _batch_status(result: BatchResult) -> int:
	return EXIT_OK if result.succeeded == result.requested else EXIT_FAILURE


class Commands:
	"""Wires configuration to the server, hosts, and analyzers.

	Collaborators are built lazily so commands that never touch remote hosts
	(status, impact) do not need SSH or lock configuration to be usable.
	"""

	def __init__(
		self,
		config: TasteTesterConfig,
		*,
		server: ServerHandle | None = None,
		transport: SSHTransport | None = None,
		locks: LockRegistry | None = None,
		hooks: Hooks | None = None,
		prompt: Callable[[str], str] = input,
	) -> None:
		self.config = config
		self.server = server or ServerHandle(config.server, config.options.resolved_user)
		self._transport = transport
		self._locks = locks
		self._hooks = hooks
		self.prompt = prompt

	@property
	def transport(self) -> SSHTransport:
		if self._transport is None:
			self._transport = SSHTransport(self.config.hosts)
		return self._transport

	@property
	def locks(self) -> LockRegistry:
		if self._locks is None:
			self._locks = make_lock_registry(self.config, self.transport)
		return self._locks

	@property
	def hooks(self) -> Hooks:
		if self._hooks is None:
			self._hooks = load_hooks(self.config.hooks.plugin_path)
		return self._hooks

	def _session(self, hostname: str) -> HostSession:
		return HostSession(hostname, self.config, self.server, self.transport, self.locks)

	def _coordinator(self) -> BatchCoordinator:
		return BatchCoordinator(self._session, self.hooks, self.config.hosts.concurrency)

	def _hosts(self) -> list[str] | None:
		hosts = self.config.options.servers
		if not hosts:
			logger.error("You must provide a hostname")
			return None
		return list(hosts)

	def _open_repo(self) -> Repo | None:
		if self.config.options.no_repo:
			return None
		return open_repo(self.config.repo)

	# -- Server lifecycle --

	async def start(self) -> int:
		await self.server.start()
		return EXIT_OK

	async def restart(self) -> int:
		await self.server.restart()
		return EXIT_OK

	async def stop(self) -> int:
		await self.server.stop()
		return EXIT_OK

	def status(self) -> int:
		if not ServerHandle.is_running(self.server.store.state_dir):
			print("Local taste-tester server not running")
			return EXIT_OK

		print(f"Local taste-tester server running on port {self.server.port}")
		last_upload = self.server.last_upload_time()
		ref = self.server.latest_uploaded_ref()
		if self.config.options.no_repo and last_upload:
			print(f"Last upload time was {last_upload}")
		elif not self.config.options.no_repo and ref:
			if last_upload:
				print(f"Last upload time was {last_upload}")
			print(f"Latest uploaded revision is {ref}")
		else:
			print("No cookbooks/roles uploads found")
		return EXIT_OK

	# -- Upload --

	async def upload(self) -> int:
		repo = self._open_repo()
		try:
			await run_upload(self.config, self.server, repo)
		except FatalUploadError:
			return EXIT_FAILURE
		return EXIT_OK

	# -- Hosts --

	async def test(self) -> int:
		opts = self.config.options
		hosts = self._hosts()
		if hosts is None:
			return EXIT_FAILURE

		if not opts.yes and not confirm(f"Set {', '.join(hosts)} to test mode? [y/N] ", self.prompt):
			return EXIT_FAILURE

		if opts.linkonly and opts.really:
			logger.warning("Skipping upload at user request... potentially dangerous!")
		else:
			if opts.linkonly:
				logger.warning("Ignoring --linkonly because --really not set")
			status = await self.upload()
			if status != EXIT_OK:
				return status

		repo = None if opts.linkonly else self._open_repo()
		result = await self._coordinator().test(
			hosts,
			repo,
			dryrun=opts.dryrun,
			run_pre_hook=not (opts.skip_pre_test_hook or opts.linkonly),
			run_post_hook=not (opts.skip_post_test_hook or opts.linkonly),
		)
		return result.exit_code

	async def untest(self) -> int:
		hosts = self._hosts()
		if hosts is None:
			return EXIT_FAILURE
		return _batch_status(await self._coordinator().untest(hosts))

	async def runchef(self) -> int:
		hosts = self._hosts()
		if hosts is None:
			return EXIT_FAILURE
		return _batch_status(await self._coordinator().runchef(hosts))

	async def keeptesting(self) -> int:
		hosts = self._hosts()
		if hosts is None:
			return EXIT_FAILURE
		return _batch_status(await self._coordinator().keeptesting(hosts))

	# -- Impact --

	async def impact(self) -> int:
		return await ImpactAnalyzer(self.config, self.hooks).impact()
