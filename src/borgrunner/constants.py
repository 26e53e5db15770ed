"""Static values shared across borgrunner services."""

DIR_MODE = 0o700
FILE_MODE = 0o600

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
TIMESTAMP_PATTERN = r"\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}"

DEFAULT_CONFIG_PATHS = ("borgrunner.yml", "/etc/borgrunner/borgrunner.yml")

MIN_BORG_VERSION = "1.2"
MIN_DOCKER_VERSION = "20.10"

# borg 1.2 signals warnings with rc 1; borg >= 1.4 uses 100-127 for
# specific warnings and 3-99 for specific errors.
BORG_WARNING_RETURNCODES = frozenset([1]) | frozenset(range(100, 128))

BORG_ENCRYPTION_MODE = "repokey-blake2"

RESOURCE_NICE_CMD = ["ionice", "-c2", "-n7", "nice", "-n10"]

FORBIDDEN_REPO_PARENTS = frozenset(
    [
        "/",
        "/bin",
        "/boot",
        "/dev",
        "/etc",
        "/lib",
        "/lib64",
        "/proc",
        "/run",
        "/sbin",
        "/sys",
        "/usr",
    ]
)

BASELINE_EXCLUDES = [
    # virtual filesystems
    "/proc",
    "/sys",
    "/dev",
    "/run",
    # transient data
    "/tmp",
    "/var/tmp",
    "/var/run",
    "/var/lock",
    # mount points (/mnt is covered by --one-file-system)
    "/media",
    # reproducible system data
    "/lost+found",
    "/swapfile",
    "/var/cache",
    "/var/lib/apt/lists/*",
    "/usr/src",
    # container runtime state, volumes are backed up as plain files
    "/var/lib/docker",
    # user caches
    "/home/*/.cache",
    "/home/*/.npm",
    "/home/*/.m2",
    "/home/*/.gradle",
    "/home/*/.vscode-server",
    "/home/*/snap",
    "/home/*/.local/share/Trash",
    "*/.thumbnails/*",
    # rotated logs
    "/var/log/journal",
    "/var/log/*.gz",
    "/var/log/*.1",
]

SPOT_CHECK_FILES = ("/etc/hostname", "/etc/passwd", "/etc/group")
RANDOM_SPOT_CHECK_COUNT = 3

TRUSTED_TEMP_DIRS = ("/dev/shm", "/run/user", "/run", "/tmp", "/var/tmp")

DUMP_DIR_PREFIX = "tmp_dumps_"
DUMP_PACKAGE_PREFIX = "db_dumps_"
SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")
SQLITE_HEADER = b"SQLite format 3\x00"
