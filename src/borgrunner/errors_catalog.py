"""Actionable error catalog for borgrunner."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "path_not_absolute": {
        "what": "Configuration key '{key}' must be an absolute path (got `{path}`).",
        "next": "Use a full path starting with `/` in the configuration file.",
    },
    "secrets_permissions": {
        "what": "Secrets file ({path}) must be owned by uid {uid} with 600 permissions "
        "(current: uid {owner}, mode {mode}).",
        "next": "Run `chown root:root {path} && chmod 600 {path}`.",
    },
    "secrets_missing": {
        "what": "Secrets file does not exist: {path}",
        "next": "Create it with `BORG_PASSPHRASE=...` and restrict it to mode 600.",
    },
    "lock_contention": {
        "what": "Another backup instance is already running (PID {pid}).",
        "next": "Wait for it to finish or stop it before retrying.",
    },
    "dependency_missing": {
        "what": "Required binary '{binary}' not found in PATH.",
        "next": "Install {binary} and make sure it is reachable by the backup job.",
    },
    "insufficient_space": {
        "what": "Insufficient disk space at {path}: {available}G available, min required: {required}G.",
        "next": "Free space or lower `min_free_space_gb` in the configuration.",
    },
    "repository_inaccessible": {
        "what": "Borg repository exists but is not accessible or cannot be opened: {path}",
        "next": "Check the passphrase and repository permissions; it will not be reinitialized.",
    },
}


def actionable_error(code: str, **kwargs: object) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
