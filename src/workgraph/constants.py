STATE_DIR_NAME = ".workgraph"
GRAPH_FILE = "graph.yaml"
GRAPH_LOCK_FILE = "graph.lock"
CHECKPOINT_LOG_FILE = "checkpoints.jsonl"
CHECKPOINT_HEAD_FILE = "checkpoint_head.json"
CHECKPOINT_LOCK_FILE = "checkpoints.lock"
CONFIG_FILE = "config.yaml"
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "events.jsonl"
ARCHIVE_DIR = "archive"
LOGS_DIR = "logs"

GRAPH_FORMAT_VERSION = 1
WINDOWS_LOCK_BYTES = 4096

DEFAULT_MAX_VERIFICATION_ATTEMPTS = 3  # Failed verdicts before mandatory escalation
DEFAULT_MAX_EFFORT = "L"
DEFAULT_VERIFY_TIMEOUT_SECONDS = 600
DEFAULT_AUDITOR_TIMEOUT_SECONDS = 120
DEFAULT_MAX_WORKERS = 3
DEFAULT_LOG_LEVEL = "INFO"

VERIFY_KIND_COMMAND = "command"
VERIFY_KIND_CHECK = "check"
VERIFY_KIND_MANUAL = "manual"
VERIFY_KINDS = (VERIFY_KIND_COMMAND, VERIFY_KIND_CHECK, VERIFY_KIND_MANUAL)

TIMEOUT_EXIT_CODE = 124

NOTE_KIND_START = "start"
NOTE_KIND_VERIFY_PASS = "verify_pass"
NOTE_KIND_VERIFY_FAIL = "verify_fail"
NOTE_KIND_BLOCKED = "blocked"
NOTE_KIND_UNBLOCKED = "unblocked"
NOTE_KIND_SKIPPED = "skipped"
NOTE_KIND_FINDINGS = "findings"
NOTE_KIND_ESCALATION = "escalation"
NOTE_KIND_COMMENT = "comment"

FINDING_SEVERITIES = ("critical", "high", "medium", "low", "info")
