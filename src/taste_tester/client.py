"""Push the chef repository to the local server with knife."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from taste_tester.config import TasteTesterConfig
from taste_tester.constants import CLIENT_KEY, KNIFE_CONFIG
from taste_tester.exceptions import UploadError
from taste_tester.repo import Repo
from taste_tester.server import ServerHandle

logger = logging.getLogger(__name__)

KNIFE_CONFIG_TEMPLATE = """\
# Generated by taste-tester; rewritten before every upload.
chef_server_url {server_url}
node_name {node_name}
client_key {client_key}
chef_repo_path {repo_path}
cookbook_path [{cookbook_paths}]
role_path {role_path}
data_bag_path {data_bag_path}
"""


def _ruby_string(value: str) -> str:
	"""Double-quoted Ruby literal; JSON escaping is valid Ruby apart from interpolation."""
	return json.dumps(value, ensure_ascii=False).replace("#", "\\#")


def ensure_client_key(state_dir: Path) -> Path:
	"""Return a throwaway client key under state_dir, creating it on first use.

	chef-zero never verifies request signatures, but knife refuses to run
	without a readable key.
	"""
	key_path = state_dir / CLIENT_KEY
	if key_path.exists():
		return key_path
	state_dir.mkdir(parents=True, exist_ok=True)
	private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
	pem = private_key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.TraditionalOpenSSL,
		encryption_algorithm=serialization.NoEncryption(),
	)
	fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
	with os.fdopen(fd, "wb") as f:
		f.write(pem)
	logger.debug("Generated throwaway client key %s", key_path)
	return key_path


def check_repo(root: Path, config: TasteTesterConfig) -> list[str]:
	"""Structural checks run before an upload. Returns problems found."""
	problems: list[str] = []
	repo_cfg = config.repo
	for cookbook_dir in repo_cfg.relative_cookbook_dirs:
		if not (root / cookbook_dir).is_dir():
			problems.append(f"cookbook directory missing: {cookbook_dir}")

	role_dir = root / repo_cfg.relative_role_dir
	if role_dir.is_dir():
		for role_file in sorted(role_dir.glob("*.json")):
			problems.extend(_check_json(role_file))
	else:
		problems.append(f"role directory missing: {repo_cfg.relative_role_dir}")

	databag_dir = root / repo_cfg.relative_databag_dir
	if databag_dir.is_dir():
		for item in sorted(databag_dir.glob("*/*.json")):
			problems.extend(_check_json(item))
	return problems


def _check_json(path: Path) -> list[str]:
	try:
		json.loads(path.read_text(encoding="utf-8"))
	except (OSError, json.JSONDecodeError) as exc:
		return [f"{path}: {exc}"]
	return []


class Client:
	"""Uploads cookbooks, roles and databags to a ServerHandle.

	knife only resolves positional upload paths through its own
	``cookbook_path``/``role_path``/``data_bag_path``, so every upload runs
	with a generated knife.rb that names the configured directories.
	"""

	def __init__(self, config: TasteTesterConfig, server: ServerHandle, repo: Repo | None = None) -> None:
		self.config = config
		self.server = server
		self.repo = repo
		self.skip_checks = False
		self.force = False

	@property
	def root(self) -> Path:
		return self.repo.path if self.repo is not None else self.config.repo.resolved_path

	@property
	def knife_config_path(self) -> Path:
		return self.server.store.state_dir / KNIFE_CONFIG

	def client_key_path(self) -> Path:
		if self.config.upload.client_key:
			return Path(self.config.upload.client_key).expanduser()
		return ensure_client_key(self.server.store.state_dir)

	def render_knife_config(self) -> str:
		repo_cfg = self.config.repo
		root = self.root.resolve()
		return KNIFE_CONFIG_TEMPLATE.format(
			server_url=_ruby_string(self.server.local_url),
			node_name=_ruby_string(self.config.upload.node_name),
			client_key=_ruby_string(str(self.client_key_path())),
			repo_path=_ruby_string(str(root)),
			cookbook_paths=", ".join(
				_ruby_string(str(root / d)) for d in repo_cfg.relative_cookbook_dirs
			),
			role_path=_ruby_string(str(root / repo_cfg.relative_role_dir)),
			data_bag_path=_ruby_string(str(root / repo_cfg.relative_databag_dir)),
		)

	def write_knife_config(self) -> Path:
		path = self.knife_config_path
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(self.render_knife_config(), encoding="utf-8")
		return path

	def build_command(self) -> list[str]:
		repo_cfg = self.config.repo
		cmd = [
			*shlex.split(self.config.upload.knife_command),
			"upload",
			*repo_cfg.relative_cookbook_dirs,
			repo_cfg.relative_role_dir,
			repo_cfg.relative_databag_dir,
			"--config", str(self.knife_config_path),
		]
		if self.force:
			cmd.append("--force")
		return cmd

	async def upload(self) -> str | None:
		"""Run the upload and return the revision that was pushed (None without a repo)."""
		if not self.skip_checks:
			problems = check_repo(self.root, self.config)
			if problems:
				raise UploadError("Repository checks failed:\n" + "\n".join(problems))

		self.write_knife_config()
		cmd = self.build_command()
		logger.info("Uploading %s to %s", self.root, self.server.local_url)
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				cwd=str(self.root),
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except FileNotFoundError as exc:
			raise UploadError(f"Command not found: {cmd[0]}") from exc
		stdout, _ = await proc.communicate()
		output = stdout.decode("utf-8", errors="replace") if stdout else ""
		if proc.returncode != 0:
			raise UploadError(output.strip() or f"{cmd[0]} upload exited with {proc.returncode}")

		if self.repo is None:
			return None
		return await self.repo.head_rev()
