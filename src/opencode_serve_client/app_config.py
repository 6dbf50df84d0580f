from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_BASE_URL = "http://localhost:9123"

_MAX_TIMEOUT_SECONDS = 24 * 60 * 60
_MAX_RETRY_ATTEMPTS = 10
_MAX_RETRY_DELAY_SECONDS = 300
_MAX_JITTER_SECONDS = 30


@dataclass
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    directory: str | None = None
    default_timeout: float = 30.0
    message_timeout: float = 300.0
    connect_timeout: float = 10.0
    enable_retry: bool = True
    max_retry_attempts: int = 3
    retry_initial_delay: float = 0.5
    retry_max_delay: float = 8.0
    retry_max_jitter: float = 1.0
    retry_max_elapsed: float = 60.0
    event_path: str = "/event"
    health_path: str = "/project"
    event_buffer_size: int = 256
    reconnect_attempts: int = 1
    reconnect_delay: float = 1.0
    log_level: str = "INFO"
    log_consumers: list | None = None

    def validated(self) -> ClientConfig:
        failures = validate_client_config(self)
        if failures:
            raise ValueError("Invalid client configuration:\n  - " + "\n  - ".join(failures))
        return self


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_client_config(config: dict, environ: dict[str, str] | None = None) -> ClientConfig:
    env = os.environ if environ is None else environ
    base_url = env.get("OPENCODE_BASE_URL") or config.get("BaseUrl", DEFAULT_BASE_URL)
    directory = env.get("OPENCODE_DIRECTORY") or config.get("Directory")
    return ClientConfig(
        base_url=str(base_url).strip().rstrip("/"),
        directory=str(directory).strip() if directory else None,
        default_timeout=float(config.get("DefaultTimeoutSeconds", 30)),
        message_timeout=float(config.get("MessageTimeoutSeconds", 300)),
        connect_timeout=float(config.get("ConnectTimeoutSeconds", 10)),
        enable_retry=_to_bool(config.get("EnableRetry", True), default=True),
        max_retry_attempts=int(config.get("MaxRetryAttempts", 3)),
        retry_initial_delay=float(config.get("RetryInitialDelaySeconds", 0.5)),
        retry_max_delay=float(config.get("RetryMaxDelaySeconds", 8)),
        retry_max_jitter=float(config.get("RetryMaxJitterSeconds", 1)),
        retry_max_elapsed=float(config.get("RetryMaxElapsedSeconds", 60)),
        event_path=str(config.get("EventPath", "/event")),
        health_path=str(config.get("HealthPath", "/project")),
        event_buffer_size=int(config.get("EventBufferSize", 256)),
        reconnect_attempts=int(config.get("ReconnectAttempts", 1)),
        reconnect_delay=float(config.get("ReconnectDelaySeconds", 1)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def _check_timeout(name: str, value: float, failures: list[str]) -> None:
    if value <= 0:
        failures.append(f"{name} must be greater than zero.")
    elif value > _MAX_TIMEOUT_SECONDS:
        failures.append(
            f"{name} of {value / 3600:.1f} hours exceeds maximum reasonable value of 24 hours. "
            "This may indicate a configuration error."
        )


def validate_client_config(config: ClientConfig) -> list[str]:
    failures: list[str] = []

    if not config.base_url or not config.base_url.strip():
        failures.append("BaseUrl cannot be empty.")
    else:
        parsed = urlparse(config.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            failures.append(
                f"BaseUrl '{config.base_url}' is not a valid HTTP or HTTPS URI. "
                "Expected format: http://localhost:9123"
            )
        else:
            if parsed.path not in ("", "/") or parsed.query:
                failures.append(
                    f"BaseUrl '{config.base_url}' should not contain a path. "
                    "Use just the scheme, host, and port."
                )
            try:
                port = parsed.port
            except ValueError:
                port = None
                failures.append(f"BaseUrl '{config.base_url}' has an invalid port.")
            if parsed.scheme == "http" and port == 443:
                failures.append(
                    f"BaseUrl '{config.base_url}' uses HTTP scheme with port 443. Did you mean https://?"
                )

    _check_timeout("DefaultTimeout", config.default_timeout, failures)
    _check_timeout("MessageTimeout", config.message_timeout, failures)
    _check_timeout("ConnectTimeout", config.connect_timeout, failures)

    if config.max_retry_attempts < 1:
        failures.append("MaxRetryAttempts must be at least 1 (1 disables retries).")
    elif config.max_retry_attempts > _MAX_RETRY_ATTEMPTS:
        failures.append(
            f"MaxRetryAttempts of {config.max_retry_attempts} exceeds maximum reasonable value of "
            f"{_MAX_RETRY_ATTEMPTS}."
        )

    for name, value in (
        ("RetryInitialDelay", config.retry_initial_delay),
        ("RetryMaxDelay", config.retry_max_delay),
        ("ReconnectDelay", config.reconnect_delay),
    ):
        if value < 0:
            failures.append(f"{name} cannot be negative.")
        elif value > _MAX_RETRY_DELAY_SECONDS:
            failures.append(f"{name} of {value:g}s exceeds maximum reasonable value of {_MAX_RETRY_DELAY_SECONDS}s.")

    if config.retry_max_jitter < 0:
        failures.append("RetryMaxJitter cannot be negative. Use 0 to disable jitter.")
    elif config.retry_max_jitter > _MAX_JITTER_SECONDS:
        failures.append(f"RetryMaxJitter of {config.retry_max_jitter:g}s exceeds maximum reasonable value of 30s.")

    if config.retry_max_elapsed <= 0:
        failures.append("RetryMaxElapsed must be greater than zero.")

    if config.event_buffer_size < 1:
        failures.append("EventBufferSize must be at least 1.")
    if config.reconnect_attempts < 0:
        failures.append("ReconnectAttempts cannot be negative. Use 0 to disable reconnects.")

    for name, path in (("EventPath", config.event_path), ("HealthPath", config.health_path)):
        if not path.startswith("/"):
            failures.append(f"{name} '{path}' must start with '/'.")

    if config.directory:
        if "\0" in config.directory:
            failures.append("Directory contains null characters which are invalid in file paths.")
        if config.directory.lower().startswith(("http://", "https://")):
            failures.append(
                f"Directory '{config.directory}' appears to be a URL. This should be a local file system path."
            )

    return failures
