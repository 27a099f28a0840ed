# ==========================================
# DAB RUNNER - PROCESS TUNABLES
# ==========================================
# Runtime behaviour (accounts, tasks, URLs, typing) lives in the JSON config
# file and is reloaded every cycle. The values here are process-level knobs.

import os

from dotenv import load_dotenv

load_dotenv()

# ------------------------------------------
# PATHS
# ------------------------------------------
DEFAULT_CONFIG_NAME = "config.json"          # Looked up in the working directory
CONFIG_PATH_ENV = "DAB_CONFIG_PATH"
LOG_FILE = os.getenv("DAB_LOG_FILE", "")           # Empty = console only
DEFAULT_SCREENSHOT_DIR_NAME = "screenshots"

# ------------------------------------------
# PAUSE / STOP (milliseconds)
# ------------------------------------------
SLEEP_STEP_MS = 250             # Sleeps are chunked so pause/stop land within one step
PAUSE_LOG_THROTTLE_MS = 1500    # "Paused" log line at most once per this window

# ------------------------------------------
# ELEMENT WAITS (milliseconds)
# ------------------------------------------
POLL_INTERVAL_MS = 250          # Element / navigation polling
CONDITION_POLL_MS = 150         # Displayed / enabled polling
LOGIN_FORM_PROBE_MS = 5000      # Short probe for the login form before clearing session
LOGIN_REDIRECT_WAIT_MS = 2000   # Pause after submitting credentials
DEFAULT_ELEMENT_TIMEOUT_MS = 30000

# ------------------------------------------
# BROWSER SESSIONS (milliseconds)
# ------------------------------------------
SESSION_RESTART_SETTLE_MS = 1200    # Wait after a restarted browser comes up
SINGLE_SESSION_SETTLE_MS = 1500     # Wait after the single-session browser starts
SESSION_STARTUP_STAGGER_MS = 800    # Stagger between multi-session browser launches
AUTO_LOGIN_STAGGER_MS = 500         # Gap between multi-session auto logins
BROWSER_ARGS = ['--no-sandbox', '--disable-setuid-sandbox', '--disable-dev-shm-usage']

# ------------------------------------------
# ACCOUNT ROTATION (milliseconds)
# ------------------------------------------
NO_ACCOUNT_DEFAULT_WAIT_MS = 1000   # Wait when every account is cooling down
NO_ACCOUNT_MIN_WAIT_MS = 250        # Floor for the cooldown wait

# ------------------------------------------
# LOOP
# ------------------------------------------
MIN_LOOP_INTERVAL_MS = 50       # LOOP_AUTOMATION.interval_ms below this is ignored
DEFAULT_TASKS_INTERVAL_MS = 1000
