METADATA_DIR_NAME = ".aidd"
# Ranked: the first existing directory wins, otherwise METADATA_DIR_NAME is created.
METADATA_DIR_CANDIDATES = (METADATA_DIR_NAME, ".autok")

SPEC_FILE_NAME = "spec.txt"
FEATURE_LIST_FILE = "feature_list.json"
TODO_FILE = "todo.md"
ITERATIONS_DIR = "iterations"
RUN_STATE_FILE = "run_state.yaml"
CONFIG_FILE = "config.yaml"
LOCK_FILE = ".lock"
LOG_SUFFIX = ".log"
LOG_INDEX_WIDTH = 3

CODEBASE_IGNORE_NAMES = frozenset(
    {
        ".git",
        *METADATA_DIR_CANDIDATES,
        ".vscode",
        ".idea",
        ".DS_Store",
        "Thumbs.db",
        "desktop.ini",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
    }
)

# Placeholders left in an unfilled feature_list.json template.
TEMPLATE_DATE_MARKER = "{yyyy-mm-dd}"
TEMPLATE_FEATURE_MARKER = "{feature name}"

SENTINEL_NO_ASSISTANT = "no assistant messages returned"
SENTINEL_PROVIDER_ERROR = "provider returned an error"

EXIT_SUCCESS = 0
EXIT_SPAWN_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_NO_ASSISTANT = 70
EXIT_PROVIDER_ERROR = 71
EXIT_IDLE_TIMEOUT = 72
EXIT_TIMEOUT = 124
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143

# Timeout-class exit codes that --continue-on-timeout exempts from the failure counter.
TIMEOUT_EXIT_CODES = frozenset({EXIT_TIMEOUT, EXIT_IDLE_TIMEOUT})

DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_IDLE_TIMEOUT_SECONDS = 180
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_QUIT_ON_ABORT = 0
TERMINATE_GRACE_SECONDS = 5
READER_JOIN_SECONDS = 5

DEFAULT_AGENT_COMMAND = "kilocode"
AGENT_FIXED_ARGS = ("--mode", "code", "--auto")
AGENT_TIMEOUT_FLAG = "--timeout"
AGENT_MODEL_FLAG = "--model"

PROMPT_ONBOARDING = "onboarding.md"
PROMPT_INITIALIZER = "initializer.md"
PROMPT_CODING = "coding.md"
PROMPT_TODO = "todo.md"

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_ABORTED = "aborted"
RUN_STATUS_INTERRUPTED = "interrupted"
RUN_STATUS_FAILED = "failed"

ERROR_TYPE_MISSING_PROJECT_DIR = "missing_project_dir"
ERROR_TYPE_MISSING_SPEC = "missing_spec"
ERROR_TYPE_SPEC_NOT_FOUND = "spec_not_found"
ERROR_TYPE_TODO_MISSING = "todo_missing"
ERROR_TYPE_INVALID_CONFIG = "invalid_config"
ERROR_TYPE_RUN_LOCKED = "run_locked"
