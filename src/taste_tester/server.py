"""Local chef-zero server lifecycle."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import time
import zlib
from pathlib import Path

import httpx

from taste_tester.config import ServerConfig
from taste_tester.constants import DEFAULT_LIMITS, LOG_FILE
from taste_tester.exceptions import ServerStartError
from taste_tester.models import ServerState
from taste_tester.state import StateStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5


def operator_port(user: str, port_range: list[int]) -> int:
	"""Map a login name onto a stable port inside port_range."""
	low, high = port_range
	return low + zlib.crc32(user.encode("utf-8")) % (high - low + 1)


def _pid_alive(pid: int) -> bool:
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		return True
	return True


def _reap(pid: int) -> None:
	"""Collect the exit status if pid is our own child, so it stops showing as alive."""
	try:
		os.waitpid(pid, os.WNOHANG)
	except ChildProcessError:
		pass


class ServerHandle:
	"""Start, stop, and inspect the operator's chef-zero instance.

	All state lives on disk under ``state_dir``; a handle built in a new
	process sees the server a previous invocation started.
	"""

	def __init__(self, config: ServerConfig, user: str) -> None:
		self.config = config
		self.user = user
		self.store = StateStore(config.resolved_state_dir)
		# Handle on a daemon this process launched; None when attached via the pid file
		self.process: subprocess.Popen[bytes] | None = None

	@staticmethod
	def is_running(state_dir: Path) -> bool:
		"""Check for a live daemon without touching any state."""
		pid = StateStore(state_dir).read_pid()
		return pid is not None and _pid_alive(pid)

	@property
	def running(self) -> bool:
		return ServerHandle.is_running(self.store.state_dir)

	@property
	def port(self) -> int:
		return self.store.load().port or operator_port(self.user, self.config.port_range)

	@property
	def url(self) -> str:
		"""Address remote hosts use to reach this server."""
		return f"http://{self.config.resolved_advertise_host}:{self.port}"

	@property
	def local_url(self) -> str:
		return f"http://{self.config.bind_host}:{self.port}"

	def state(self) -> ServerState:
		state = self.store.load()
		state.port = self.port
		state.running = self.running
		return state

	def last_upload_time(self) -> str | None:
		return self.store.load().last_upload_time

	def latest_uploaded_ref(self) -> str | None:
		return self.store.load().latest_uploaded_ref

	def record_upload(self, ref: str | None) -> ServerState:
		return self.store.record_upload(ref)

	async def start(self) -> None:
		if self.running:
			logger.debug("chef-zero already running on port %d", self.port)
			return

		# A new daemon starts empty, so previous upload metadata no longer applies
		state = ServerState(port=self.port)
		self.store.save(state)

		cmd = [
			*shlex.split(self.config.command),
			"--host", self.config.bind_host,
			"--port", str(state.port),
		]
		log_path = self.store.state_dir / LOG_FILE
		logger.info("Starting chef-zero on port %d", state.port)
		try:
			with open(log_path, "ab") as log:
				proc = subprocess.Popen(
					cmd,
					stdin=subprocess.DEVNULL,
					stdout=log,
					stderr=subprocess.STDOUT,
					start_new_session=True,
				)
		except OSError as exc:
			raise ServerStartError(f"Could not launch {cmd[0]}: {exc}") from exc

		self.store.write_pid(proc.pid)
		self.process = proc
		await self._wait_until_ready(proc, log_path)

	async def _wait_until_ready(self, proc: subprocess.Popen[bytes], log_path: Path) -> None:
		deadline = time.monotonic() + self.config.startup_timeout
		async with httpx.AsyncClient(timeout=2.0) as client:
			while time.monotonic() < deadline:
				returncode = proc.poll()
				if returncode is not None:
					self.process = None
					self.store.remove_pid()
					raise ServerStartError(
						f"chef-zero exited with status {returncode}, see {log_path}"
					)
				try:
					await client.get(self.local_url)
					logger.debug("chef-zero answering at %s", self.local_url)
					return
				except httpx.TransportError:
					await asyncio.sleep(POLL_INTERVAL)

		proc.kill()
		proc.wait()
		self.process = None
		self.store.remove_pid()
		raise ServerStartError(
			f"chef-zero did not answer on {self.local_url} within {self.config.startup_timeout}s"
		)

	def _collect(self, pid: int) -> None:
		"""Reap pid through our Popen handle when this process launched it."""
		if self.process is not None and self.process.pid == pid:
			self.process.poll()
		else:
			_reap(pid)

	async def stop(self) -> None:
		pid = self.store.read_pid()
		if pid is None or not _pid_alive(pid):
			logger.debug("chef-zero not running, nothing to stop")
			self.process = None
			self.store.remove_pid()
			return

		logger.info("Stopping chef-zero (pid %d)", pid)
		os.kill(pid, signal.SIGTERM)
		deadline = time.monotonic() + DEFAULT_LIMITS["stop_timeout"]
		while time.monotonic() < deadline:
			self._collect(pid)
			if not _pid_alive(pid):
				break
			await asyncio.sleep(POLL_INTERVAL / 5)
		else:
			logger.warning("chef-zero (pid %d) ignored SIGTERM, killing", pid)
			try:
				os.kill(pid, signal.SIGKILL)
			except ProcessLookupError:
				pass
			self._collect(pid)

		self.process = None
		self.store.remove_pid()
		self.store.clear_uploads()

	async def restart(self) -> None:
		await self.stop()
		await self.start()
