"""Exit codes, file names, and default limits."""

from __future__ import annotations

# -- Exit codes --

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2
EXIT_ALL_LOCKED = 3

# -- Host outcome statuses --

OUTCOME_OK = "ok"
OUTCOME_LOCK_CONFLICT = "lock_conflict"
OUTCOME_ERROR = "error"

# -- Local server files (relative to server.state_dir) --

STATE_FILE = "state.json"
PID_FILE = "chef-zero.pid"
LOG_FILE = "chef-zero.log"
KNIFE_CONFIG = "knife.rb"
CLIENT_KEY = "client.pem"

# -- Remote host files (relative to hosts.chef_config_path) --

TEST_CONFIG = "client-taste-tester.rb"
PROD_CONFIG = "client-prod.rb"
LOCK_FILE = "taste-tester.lock"

DEFAULT_LIMITS: dict[str, int] = {
	"port_range_start": 5000,
	"port_range_end": 5500,
	"startup_timeout": 30,
	"stop_timeout": 10,
	"connect_timeout": 8,
	"command_timeout": 300,
	"testing_time": 3600,
	"concurrency": 1,
}
