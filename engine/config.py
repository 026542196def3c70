import json
import os
import shlex
import sys
from dataclasses import dataclass, field

from config import settings as defaults

_SEARCH_BACKENDS = {"soundcloud", "youtube"}
_TRUTHY = {"1", "true", "yes", "on"}

_POSITIVE_NUMBER_KEYS = (
    "search_cache_ttl_seconds",
    "job_grace_seconds",
    "request_timeout_seconds",
    "convert_timeout_seconds",
    "metadata_timeout_seconds",
    "retry_base_delay",
)
_POSITIVE_INT_KEYS = (
    "search_limit",
    "convert_max_attempts",
    "max_concurrent_conversions",
    "download_socket_timeout_seconds",
    "metadata_socket_timeout_seconds",
)


@dataclass(frozen=True)
class S3Settings:
    bucket: str
    endpoint_url: str | None = None
    prefix: str = ""
    region: str | None = None
    presign_seconds: int = defaults.S3_PRESIGN_SECONDS
    access_key_id: str | None = None
    secret_access_key: str | None = None


@dataclass(frozen=True)
class Settings:
    search_backend: str = defaults.DEFAULT_SEARCH_BACKEND
    search_limit: int = defaults.SEARCH_LIMIT
    search_cache_ttl_seconds: float = defaults.SEARCH_CACHE_TTL_SECONDS
    job_grace_seconds: float = defaults.JOB_GRACE_SECONDS
    request_timeout_seconds: float = defaults.REQUEST_TIMEOUT_SECONDS
    convert_timeout_seconds: float = defaults.CONVERT_TIMEOUT_SECONDS
    metadata_timeout_seconds: float = defaults.METADATA_TIMEOUT_SECONDS
    download_socket_timeout_seconds: int = defaults.DOWNLOAD_SOCKET_TIMEOUT_SECONDS
    metadata_socket_timeout_seconds: int = defaults.METADATA_SOCKET_TIMEOUT_SECONDS
    convert_max_attempts: int = defaults.CONVERT_MAX_ATTEMPTS
    retry_base_delay: float = defaults.RETRY_BASE_DELAY_SECONDS
    max_concurrent_conversions: int = defaults.MAX_CONCURRENT_CONVERSIONS
    audio_format: str = defaults.AUDIO_FORMAT
    audio_quality: str | None = None
    user_agent: str = defaults.DEFAULT_USER_AGENT
    ytdlp_command: tuple[str, ...] = field(default_factory=lambda: (sys.executable, "-m", "yt_dlp"))
    allowed_origins: tuple[str, ...] = defaults.DEFAULT_ALLOWED_ORIGINS
    public_base_url: str | None = None
    hide_details: bool = False
    s3: S3Settings | None = None


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    backend = config.get("search_backend")
    if backend is not None and backend not in _SEARCH_BACKENDS:
        errors.append(f"search_backend must be one of {sorted(_SEARCH_BACKENDS)}")

    for key in _POSITIVE_NUMBER_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"{key} must be a positive number")

    for key in _POSITIVE_INT_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            errors.append(f"{key} must be a positive integer")

    audio_format = config.get("audio_format")
    if audio_format is not None:
        if not isinstance(audio_format, str) or not audio_format.isalnum():
            errors.append("audio_format must be an alphanumeric extension")

    command = config.get("ytdlp_command")
    if command is not None:
        if isinstance(command, str):
            if not command.strip():
                errors.append("ytdlp_command must not be empty")
        elif not (isinstance(command, list) and command and all(isinstance(p, str) for p in command)):
            errors.append("ytdlp_command must be a string or a non-empty list of strings")

    origins = config.get("allowed_origins")
    if origins is not None:
        if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
            errors.append("allowed_origins must be a list of strings")

    s3 = config.get("s3")
    if s3 is not None:
        if not isinstance(s3, dict):
            errors.append("s3 must be an object")
        else:
            if not s3.get("bucket"):
                errors.append("s3.bucket is required when s3 is configured")
            presign = s3.get("presign_seconds")
            if presign is not None and (isinstance(presign, bool) or not isinstance(presign, int) or presign < 0):
                errors.append("s3.presign_seconds must be a non-negative integer")

    return errors


def _env_or_default(environ, name, default):
    value = environ.get(name)
    return value if value else default


def _split_csv(value):
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def _build_s3_settings(config, environ):
    raw = config.get("s3") if isinstance(config.get("s3"), dict) else {}
    bucket = _env_or_default(environ, "TUNECACHE_S3_BUCKET", raw.get("bucket"))
    if not bucket:
        return None
    presign = _env_or_default(environ, "TUNECACHE_S3_PRESIGN_SECONDS", raw.get("presign_seconds"))
    return S3Settings(
        bucket=bucket,
        endpoint_url=_env_or_default(environ, "TUNECACHE_S3_ENDPOINT", raw.get("endpoint_url")),
        prefix=str(_env_or_default(environ, "TUNECACHE_S3_PREFIX", raw.get("prefix")) or "").strip("/"),
        region=_env_or_default(environ, "AWS_DEFAULT_REGION", raw.get("region")),
        presign_seconds=int(presign) if presign is not None else defaults.S3_PRESIGN_SECONDS,
        access_key_id=environ.get("AWS_ACCESS_KEY_ID"),
        secret_access_key=environ.get("AWS_SECRET_ACCESS_KEY"),
    )


def build_settings(config=None, environ=None):
    """Merge defaults, the JSON config file and environment overrides.

    Environment variables win over the config file. Raises ``ValueError`` with
    every problem found when the merged configuration is invalid.
    """
    config = dict(config or {})
    environ = os.environ if environ is None else environ

    errors = validate_config(config)
    if errors:
        raise ValueError("; ".join(errors))

    overrides = {}
    for key in _POSITIVE_NUMBER_KEYS + _POSITIVE_INT_KEYS:
        if key in config:
            overrides[key] = config[key]
    for key in ("audio_format", "audio_quality", "user_agent", "public_base_url"):
        if config.get(key):
            overrides[key] = config[key]

    backend = _env_or_default(environ, "TUNECACHE_SEARCH_BACKEND", config.get("search_backend"))
    if backend:
        if backend not in _SEARCH_BACKENDS:
            raise ValueError(f"search_backend must be one of {sorted(_SEARCH_BACKENDS)}")
        overrides["search_backend"] = backend

    command = config.get("ytdlp_command")
    if isinstance(command, str):
        overrides["ytdlp_command"] = tuple(shlex.split(command))
    elif isinstance(command, list):
        overrides["ytdlp_command"] = tuple(command)

    origins = environ.get("TUNECACHE_ALLOWED_ORIGINS")
    if origins:
        overrides["allowed_origins"] = _split_csv(origins)
    elif config.get("allowed_origins") is not None:
        overrides["allowed_origins"] = tuple(config["allowed_origins"])

    public_base_url = environ.get("TUNECACHE_PUBLIC_BASE_URL")
    if public_base_url:
        overrides["public_base_url"] = public_base_url
    if overrides.get("public_base_url"):
        overrides["public_base_url"] = overrides["public_base_url"].rstrip("/")

    hide_details = environ.get("TUNECACHE_HIDE_DETAILS")
    if hide_details is not None:
        overrides["hide_details"] = hide_details.strip().lower() in _TRUTHY
    elif "hide_details" in config:
        overrides["hide_details"] = bool(config["hide_details"])

    overrides["s3"] = _build_s3_settings(config, environ)
    return Settings(**overrides)
