import os
from pathlib import Path
from typing import Callable, Dict

from dotenv import load_dotenv

from .exceptions import SetupError

load_dotenv()

# Environment values that could not be parsed, reported by check_settings()
INVALID_SETTINGS: Dict[str, str] = {}


def _number(name: str, default: str, cast: Callable[[str], float]):
    raw = os.getenv(name) or default
    try:
        return cast(raw)
    except ValueError:
        INVALID_SETTINGS[name] = raw
        return cast(default)


def check_settings():
    """Raise SetupError naming every numeric setting that is not a number"""
    if INVALID_SETTINGS:
        invalid = ", ".join(f"{name}={raw!r}" for name, raw in sorted(INVALID_SETTINGS.items()))
        raise SetupError(f"Invalid configuration: {invalid}")


# Discovery filters
TENANT_NAMESPACE_PREFIX = os.getenv("TENANT_NAMESPACE_PREFIX", "ns-")
BACKUP_SUFFIX = os.getenv("BACKUP_SUFFIX", "-backup")
BACKUP_NODE_LABEL = os.getenv("BACKUP_NODE_LABEL", "scale.sealos.io/node")
HOSTNAME_LABEL = "kubernetes.io/hostname"

# External data mover, invoked as: <script> -n <namespace> -i <input> -o <output>
MIGRATE_SCRIPT = os.getenv("MIGRATE_SCRIPT", "./bin/migrate.sh")
MOVER_TERMINATE_GRACE = _number("MOVER_TERMINATE_GRACE", "10", float)

REPORT_FILE = Path(os.getenv("REPORT_FILE", "pvc_status.txt"))
LOG_FILE = os.getenv("LOG_FILE")

MAX_WORKERS = _number("MAX_WORKERS", "8", int)

# Workload scaling
SCALE_ATTEMPTS = _number("SCALE_ATTEMPTS", "3", int)
SCALE_RETRY_DELAY = _number("SCALE_RETRY_DELAY", "3", float)
RESUME_REPLICAS = _number("RESUME_REPLICAS", "1", int)

# Recreated claim binding
BIND_POLL_INTERVAL = _number("BIND_POLL_INTERVAL", "5", float)
BIND_MAX_ERRORS = _number("BIND_MAX_ERRORS", "10", int)
BIND_MAX_PENDING = _number("BIND_MAX_PENDING", "30", int)
# Time the resumed StatefulSets need to recreate their claims before polling
BIND_SETTLE_SECONDS = _number("BIND_SETTLE_SECONDS", "60", float)
