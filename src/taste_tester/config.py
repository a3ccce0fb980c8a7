"""TOML configuration for taste-tester."""

from __future__ import annotations

import getpass
import logging
import socket
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from taste_tester.constants import DEFAULT_LIMITS
from taste_tester.models import DirFilters

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "taste-tester.toml"
REPO_TYPES = ("auto", "git", "hg", "svn")
LOCK_BACKENDS = ("remote", "sqlite")


@dataclass
class ServerConfig:
	"""Local chef-zero server settings."""

	state_dir: str = "~/.chef/taste-tester"
	command: str = "chef-zero"
	bind_host: str = "localhost"
	advertise_host: str = ""
	port_range: list[int] = field(
		default_factory=lambda: [DEFAULT_LIMITS["port_range_start"], DEFAULT_LIMITS["port_range_end"]],
	)
	startup_timeout: int = DEFAULT_LIMITS["startup_timeout"]

	@property
	def resolved_state_dir(self) -> Path:
		return Path(self.state_dir).expanduser()

	@property
	def resolved_advertise_host(self) -> str:
		return self.advertise_host or socket.getfqdn()


@dataclass
class RepoConfig:
	"""Chef repository location and impact scoping."""

	type: str = "auto"
	path: str = "."
	relative_cookbook_dirs: list[str] = field(default_factory=lambda: ["cookbooks"])
	relative_role_dir: str = "roles"
	relative_databag_dir: str = "databags"
	vcs_start_ref_git: str = "origin/HEAD"
	vcs_start_ref_hg: str = "master"
	vcs_end_ref: str | None = None
	track_symlinks: bool = False

	@property
	def resolved_path(self) -> Path:
		return Path(self.path).expanduser()

	@property
	def dir_filters(self) -> DirFilters:
		return DirFilters(
			cookbook_dirs=tuple(self.relative_cookbook_dirs),
			role_dir=self.relative_role_dir,
			databag_dir=self.relative_databag_dir,
		)


@dataclass
class UploadConfig:
	"""knife upload invocation."""

	knife_command: str = "knife"
	client_key: str = ""
	node_name: str = "taste-tester"


@dataclass
class HostsConfig:
	"""Remote host access and chef-client layout."""

	ssh_command: str = "ssh"
	ssh_user: str = "root"
	ssh_options: list[str] = field(default_factory=list)
	connect_timeout: int = DEFAULT_LIMITS["connect_timeout"]
	command_timeout: int = DEFAULT_LIMITS["command_timeout"]
	testing_time: int = DEFAULT_LIMITS["testing_time"]
	chef_config_path: str = "/etc/chef"
	chef_config: str = "client.rb"
	chef_client_command: str = "chef-client"
	concurrency: int = DEFAULT_LIMITS["concurrency"]


@dataclass
class LocksConfig:
	"""Where host test locks are kept."""

	backend: str = "remote"  # remote/sqlite
	path: str = ""


@dataclass
class HooksConfig:
	plugin_path: str = ""


@dataclass
class RunOptions:
	"""Per-invocation switches; usually set from the command line."""

	servers: list[str] | None = None
	yes: bool = False
	linkonly: bool = False
	really: bool = False
	force_upload: bool = False
	skip_repo_checks: bool = False
	skip_pre_test_hook: bool = False
	skip_post_test_hook: bool = False
	no_repo: bool = False
	json: bool = False
	dryrun: bool = False
	user: str = ""

	@property
	def resolved_user(self) -> str:
		return self.user or getpass.getuser()


@dataclass
class TasteTesterConfig:
	"""Top-level taste-tester configuration."""

	server: ServerConfig = field(default_factory=ServerConfig)
	repo: RepoConfig = field(default_factory=RepoConfig)
	upload: UploadConfig = field(default_factory=UploadConfig)
	hosts: HostsConfig = field(default_factory=HostsConfig)
	locks: LocksConfig = field(default_factory=LocksConfig)
	hooks: HooksConfig = field(default_factory=HooksConfig)
	options: RunOptions = field(default_factory=RunOptions)


def _build_section(cls: type, data: dict[str, Any]) -> Any:
	"""Instantiate a section dataclass from a TOML table, ignoring unknown keys."""
	known = {f.name for f in fields(cls)}
	unknown = set(data) - known
	if unknown:
		logger.debug("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)))
	return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: str | Path | None = None) -> TasteTesterConfig:
	"""Load configuration from a TOML file.

	With no path, ``./taste-tester.toml`` is used when present and defaults
	otherwise. An explicit path that does not exist raises FileNotFoundError.
	"""
	if path is None:
		default = Path(DEFAULT_CONFIG_NAME)
		if not default.exists():
			return TasteTesterConfig()
		path = default

	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	return TasteTesterConfig(
		server=_build_section(ServerConfig, data.get("server", {})),
		repo=_build_section(RepoConfig, data.get("repo", {})),
		upload=_build_section(UploadConfig, data.get("upload", {})),
		hosts=_build_section(HostsConfig, data.get("hosts", {})),
		locks=_build_section(LocksConfig, data.get("locks", {})),
		hooks=_build_section(HooksConfig, data.get("hooks", {})),
		options=_build_section(RunOptions, data.get("options", {})),
	)


def validate_config(config: TasteTesterConfig) -> list[str]:
	"""Return a list of configuration problems (empty when valid)."""
	issues: list[str] = []

	port_range = config.server.port_range
	if len(port_range) != 2 or not 0 < port_range[0] <= port_range[1] < 65536:
		issues.append(f"server.port_range must be [low, high] within 1-65535, got {port_range}")
	if config.server.startup_timeout <= 0:
		issues.append("server.startup_timeout must be positive")

	if config.repo.type not in REPO_TYPES:
		issues.append(f"repo.type must be one of {', '.join(REPO_TYPES)}, got {config.repo.type!r}")
	if not config.repo.relative_cookbook_dirs:
		issues.append("repo.relative_cookbook_dirs must name at least one directory")

	if config.hosts.concurrency < 1:
		issues.append("hosts.concurrency must be at least 1")
	if config.hosts.testing_time <= 0:
		issues.append("hosts.testing_time must be positive")

	if config.locks.backend not in LOCK_BACKENDS:
		issues.append(f"locks.backend must be one of {', '.join(LOCK_BACKENDS)}, got {config.locks.backend!r}")
	elif config.locks.backend == "sqlite" and not config.locks.path:
		issues.append("locks.path is required for the sqlite lock backend")

	plugin = config.hooks.plugin_path
	if plugin and not Path(plugin).expanduser().is_file():
		issues.append(f"hooks.plugin_path does not exist: {plugin}")

	return issues
