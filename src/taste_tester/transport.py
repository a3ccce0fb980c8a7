"""SSH command execution against remote hosts."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass

from taste_tester.config import HostsConfig
from taste_tester.exceptions import HostCommandError

logger = logging.getLogger(__name__)


@dataclass
class RemoteResult:
	"""Exit status and combined output of one remote command."""

	returncode: int = 0
	output: str = ""

	@property
	def ok(self) -> bool:
		return self.returncode == 0


class SSHTransport:
	"""Runs shell snippets on hosts through the OpenSSH client."""

	def __init__(self, config: HostsConfig) -> None:
		self.config = config

	def build_command(self, hostname: str, command: str) -> list[str]:
		target = f"{self.config.ssh_user}@{hostname}" if self.config.ssh_user else hostname
		return [
			*shlex.split(self.config.ssh_command),
			"-o", "BatchMode=yes",
			"-o", f"ConnectTimeout={self.config.connect_timeout}",
			*self.config.ssh_options,
			target,
			f"bash -c {shlex.quote(command)}",
		]

	async def run(self, hostname: str, command: str, timeout: int | None = None) -> RemoteResult:
		timeout = timeout or self.config.command_timeout
		argv = self.build_command(hostname, command)
		logger.debug("Running on %s: %s", hostname, command)
		try:
			proc = await asyncio.create_subprocess_exec(
				*argv,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except FileNotFoundError:
			return RemoteResult(returncode=-1, output=f"Command not found: {argv[0]}")

		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		except asyncio.TimeoutError:
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
			return RemoteResult(returncode=-1, output=f"Command timed out after {timeout}s")

		output = stdout.decode("utf-8", errors="replace") if stdout else ""
		returncode = proc.returncode if proc.returncode is not None else -1
		return RemoteResult(returncode=returncode, output=output)

	async def run_checked(self, hostname: str, command: str, timeout: int | None = None) -> str:
		result = await self.run(hostname, command, timeout)
		if not result.ok:
			raise HostCommandError(
				hostname, f"exit {result.returncode}: {result.output.strip()[:500]}",
			)
		return result.output
