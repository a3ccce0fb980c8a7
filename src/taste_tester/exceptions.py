"""Error taxonomy for taste-tester commands."""

from __future__ import annotations


class TasteTesterError(Exception):
	"""Base class for every failure the CLI reports as a diagnostic."""


class UsageError(TasteTesterError):
	"""Missing hosts, bad repo path, or other invocation mistakes."""


class UploadError(TasteTesterError):
	"""The uploader failed; the message carries its raw output."""


class FatalUploadError(TasteTesterError):
	"""Upload failed and will not be retried."""


class RepoUnavailableError(TasteTesterError):
	"""The configured repository cannot be opened."""


class ServerStartError(TasteTesterError):
	"""The local chef server could not be launched or never became ready."""


class HostCommandError(TasteTesterError):
	"""A command run on a remote host failed."""

	def __init__(self, hostname: str, message: str) -> None:
		super().__init__(f"{hostname}: {message}")
		self.hostname = hostname


class HostBatchError(TasteTesterError):
	"""A non-lock failure while putting hosts into test mode."""
