"""Upload pipeline with a single forced retry for known chef-zero failures.

Most upload failures seen in practice come from a half-finished earlier upload
leaving chef-zero in an undefined state. Those are recognised by their message
and retried exactly once against a freshly restarted server; anything else, or
a second failure, is final.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from taste_tester.client import Client
from taste_tester.config import TasteTesterConfig
from taste_tester.exceptions import FatalUploadError
from taste_tester.models import ServerState
from taste_tester.repo import Repo
from taste_tester.server import ServerHandle

logger = logging.getLogger(__name__)

# (pattern, classification) -- extend here to recognise new transient failures
TRANSIENT_UPLOAD_ERRORS: tuple[tuple[re.Pattern[str], str], ...] = (
	(re.compile(r"Cannot find a cookbook named", re.IGNORECASE | re.MULTILINE), "missing_cookbook"),
	(re.compile(r"Connection reset by peer", re.IGNORECASE | re.MULTILINE), "connection_reset"),
	(re.compile(r"Object not found", re.IGNORECASE | re.MULTILINE), "object_missing"),
)


def classify_upload_error(message: str) -> str | None:
	"""Return the transient classification for an error message, or None."""
	for pattern, classification in TRANSIENT_UPLOAD_ERRORS:
		if pattern.search(message):
			return classification
	return None


async def upload(
	config: TasteTesterConfig,
	server: ServerHandle,
	repo: Repo | None = None,
	client_factory: Callable[[ServerHandle], Client] | None = None,
) -> ServerState:
	"""Bring the server up and push the repository to it.

	Raises FatalUploadError once the failure is not (or no longer) retryable.
	"""
	force = config.options.force_upload
	retried = False
	make_client = client_factory or (lambda s: Client(config, s, repo))

	while True:
		try:
			# A forced upload starts from an empty server rather than repairing one
			if force:
				await server.restart()
			else:
				await server.start()
			client = make_client(server)
			client.skip_checks = config.options.skip_repo_checks
			client.force = force
			ref = await client.upload()
		except Exception as exc:
			classification = classify_upload_error(str(exc))
			if classification is not None and not retried:
				retried = True
				force = True
				logger.warning(
					"Upload failed (%s), restarting chef-zero for one full retry", classification,
				)
				continue
			logger.error("Upload failed")
			logger.error("%s", exc, exc_info=(type(exc), exc, exc.__traceback__))
			raise FatalUploadError(f"Upload failed: {exc}") from exc

		state = server.record_upload(ref)
		logger.info("Upload complete%s", f" at revision {ref}" if ref else "")
		return state
