"""On-disk metadata for the local chef server.

The record survives across invocations so a fresh process can re-attach to a
server started earlier and report what was last uploaded to it.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from taste_tester.constants import PID_FILE, STATE_FILE
from taste_tester.models import ServerState, _now_iso

logger = logging.getLogger(__name__)


class StateStore:
	"""Reads and writes ``state.json`` and the daemon pid file in one directory."""

	def __init__(self, state_dir: Path) -> None:
		self.state_dir = state_dir

	@property
	def state_path(self) -> Path:
		return self.state_dir / STATE_FILE

	@property
	def pid_path(self) -> Path:
		return self.state_dir / PID_FILE

	def load(self) -> ServerState:
		"""Return the persisted state, or an empty one if missing or unreadable."""
		if not self.state_path.exists():
			return ServerState()
		try:
			data = json.loads(self.state_path.read_text(encoding="utf-8"))
		except (OSError, json.JSONDecodeError) as exc:
			logger.warning("Ignoring unreadable server state %s: %s", self.state_path, exc)
			return ServerState()
		if not isinstance(data, dict):
			return ServerState()
		return ServerState.from_dict(data)

	def save(self, state: ServerState) -> None:
		self.state_dir.mkdir(parents=True, exist_ok=True)
		tmp = self.state_path.with_suffix(".tmp")
		tmp.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")
		os.replace(tmp, self.state_path)

	def record_upload(self, ref: str | None) -> ServerState:
		state = self.load()
		state.last_upload_time = _now_iso()
		state.latest_uploaded_ref = ref
		self.save(state)
		return state

	def clear_uploads(self) -> None:
		state = self.load()
		state.last_upload_time = None
		state.latest_uploaded_ref = None
		self.save(state)

	def read_pid(self) -> int | None:
		try:
			return int(self.pid_path.read_text().strip())
		except (OSError, ValueError):
			return None

	def write_pid(self, pid: int) -> None:
		self.state_dir.mkdir(parents=True, exist_ok=True)
		self.pid_path.write_text(f"{pid}\n")

	def remove_pid(self) -> None:
		self.pid_path.unlink(missing_ok=True)
