"""Command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from taste_tester.commands import Commands
from taste_tester.config import REPO_TYPES, TasteTesterConfig, load_config, validate_config
from taste_tester.constants import EXIT_FAILURE, EXIT_OK
from taste_tester.exceptions import TasteTesterError

logger = logging.getLogger(__name__)

ASYNC_COMMANDS = ("start", "restart", "stop", "test", "untest", "runchef", "keeptesting", "upload", "impact")
COMMAND_HELP = {
	"start": "Start the local chef server (no-op if running)",
	"restart": "Restart the local chef server from a clean state",
	"stop": "Stop the local chef server",
	"status": "Show local chef server status and last upload",
	"test": "Upload the repo and point hosts at the local server",
	"untest": "Point hosts back at their production server",
	"runchef": "Run chef-client on hosts",
	"keeptesting": "Extend the test session on hosts",
	"upload": "Upload the repo to the local server",
	"impact": "List roles affected by changes in the working copy",
}


def _add_common_args(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("-c", "--config", default=None, help="Path to taste-tester.toml")
	parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
	parser.add_argument("-s", "--servers", default=None, help="Comma-separated hostnames")
	parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
	parser.add_argument("-l", "--linkonly", action="store_true", help="Skip upload (requires --really)")
	parser.add_argument("--really", action="store_true", help="Acknowledge --linkonly")
	parser.add_argument("--force-upload", action="store_true", help="Restart the server before uploading")
	parser.add_argument("--skip-repo-checks", action="store_true")
	parser.add_argument("--skip-pre-test-hook", action="store_true")
	parser.add_argument("--skip-post-test-hook", action="store_true")
	parser.add_argument("--no-repo", action="store_true", help="Do not use version control")
	parser.add_argument("--json", action="store_true", help="JSON impact output (not implemented)")
	parser.add_argument("--dryrun", action="store_true", help="Passed to the test hooks")
	parser.add_argument("-r", "--repo", default=None, help="Path to the chef repository")
	parser.add_argument("--repo-type", choices=REPO_TYPES, default=None)
	parser.add_argument("--user", default=None, help="Owner recorded on host locks")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="taste-tester",
		description="Test chef changes on real hosts against a local chef-zero server.",
	)
	sub = parser.add_subparsers(dest="command")
	for name, help_text in COMMAND_HELP.items():
		_add_common_args(sub.add_parser(name, help=help_text))
	return parser


def apply_overrides(config: TasteTesterConfig, args: argparse.Namespace) -> TasteTesterConfig:
	"""Fold command-line flags into the loaded configuration."""
	opts = config.options
	if args.servers:
		opts.servers = [h.strip() for h in args.servers.split(",") if h.strip()]
	for flag in (
		"yes", "linkonly", "really", "force_upload", "skip_repo_checks",
		"skip_pre_test_hook", "skip_post_test_hook", "no_repo", "json", "dryrun",
	):
		if getattr(args, flag):
			setattr(opts, flag, True)
	if args.user:
		opts.user = args.user
	if args.repo:
		config.repo.path = args.repo
	if args.repo_type:
		config.repo.type = args.repo_type
	return config


async def _dispatch(commands: Commands, command: str) -> int:
	return await getattr(commands, command)()


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)
	if not args.command:
		parser.print_help()
		return EXIT_OK

	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)

	try:
		config = apply_overrides(load_config(args.config), args)
	except FileNotFoundError as exc:
		logger.error("%s", exc)
		return EXIT_FAILURE
	except ValueError as exc:
		logger.error("Invalid config: %s", exc)
		return EXIT_FAILURE

	issues = validate_config(config)
	if issues:
		for issue in issues:
			logger.error("Config: %s", issue)
		return EXIT_FAILURE

	commands = Commands(config)
	try:
		if args.command in ASYNC_COMMANDS:
			return asyncio.run(_dispatch(commands, args.command))
		return commands.status()
	except TasteTesterError as exc:
		logger.error("%s", exc)
		return EXIT_FAILURE
	except KeyboardInterrupt:
		logger.error("Interrupted")
		return EXIT_FAILURE


if __name__ == "__main__":
	sys.exit(main())
