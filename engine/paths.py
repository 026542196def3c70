import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("TUNECACHE_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("TUNECACHE_CONFIG_DIR", _DEFAULTS["config"])).resolve()
# Artifacts live under the data dir unless placed elsewhere explicitly.
AUDIO_DIR = Path(os.environ.get("TUNECACHE_AUDIO_DIR", DATA_DIR / "audio")).resolve()
LOG_DIR = Path(os.environ.get("TUNECACHE_LOG_DIR", _DEFAULTS["logs"])).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    audio_dir: str
    staging_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return str(base_dir)
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        # All writes stay under explicit base dirs.
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def build_engine_paths(audio_dir=None, log_dir=None):
    audio_root = Path(audio_dir or AUDIO_DIR).resolve()
    staging_dir = audio_root / ".staging"
    logs = Path(log_dir or LOG_DIR).resolve()

    for d in (audio_root, staging_dir, logs):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(logs),
        audio_dir=str(audio_root),
        staging_dir=str(staging_dir),
    )
