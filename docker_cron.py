#!/usr/bin/env python3
"""
docker_cron.py

Crontab-driven scheduler that starts Docker containers on six-field cron
schedules. One thread per job; SIGTERM stops all of them.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from crontab_file import CronJob, CrontabError, load_crontab
from docker_backend import (
    WAIT_BACKEND_ERROR,
    WAIT_FAILED_MESSAGE,
    WAIT_FAILED_STATUS,
    WAIT_SUCCESS,
    BackendUnavailableError,
    DockerBackend,
    StartResult,
    WaitResult,
)

DEFAULT_CONFIG = "docker-cron.yaml"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_DOCKER_TIMEOUT_SECONDS = 60
DEFAULT_JOIN_TIMEOUT_SECONDS = 1.0
DEFAULT_SHUTDOWN_POLL_SECONDS = 0.2
LOG_LEVEL_ENV = "DOCKER_CRON_LOG_LEVEL"
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
VALID_LOG_FORMATS = {"text", "json"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

OUTCOME_START_FAILED = "start_failed"
OUTCOME_SUCCESS = WAIT_SUCCESS
OUTCOME_FAILED_MESSAGE = WAIT_FAILED_MESSAGE
OUTCOME_FAILED_STATUS = WAIT_FAILED_STATUS
OUTCOME_BACKEND_ERROR = WAIT_BACKEND_ERROR
OUTCOME_NO_RESPONSE = "no_response"
VALID_OUTCOMES = {
    OUTCOME_START_FAILED,
    OUTCOME_SUCCESS,
    OUTCOME_FAILED_MESSAGE,
    OUTCOME_FAILED_STATUS,
    OUTCOME_BACKEND_ERROR,
    OUTCOME_NO_RESPONSE,
}

UTC = timezone.utc
logger = logging.getLogger("docker_cron")


class DockerCronError(Exception):
    """Base error for docker-cron."""


class ConfigError(DockerCronError):
    """Settings validation error."""


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, carrying job fields when present."""

    EXTRA_FIELDS = ("container", "schedule", "outcome", "status_code", "scheduled_for")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in self.EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json", log_file: Optional[Path] = None) -> logging.Logger:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter(TEXT_LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


class JobLogAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: Any) -> Any:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"[{extra['container']}] {msg}", kwargs


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DockerSettings:
    base_url: Optional[str]
    timeout_seconds: int


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    format: str
    file: Optional[Path]


@dataclass(frozen=True)
class Settings:
    docker: DockerSettings
    logging: LoggingSettings
    join_timeout_seconds: float

    @staticmethod
    def default() -> "Settings":
        return Settings(
            docker=DockerSettings(base_url=None, timeout_seconds=DEFAULT_DOCKER_TIMEOUT_SECONDS),
            logging=LoggingSettings(
                level=_env_log_level() or "INFO",
                format="json",
                file=None,
            ),
            join_timeout_seconds=DEFAULT_JOIN_TIMEOUT_SECONDS,
        )


def _env_log_level() -> Optional[str]:
    raw = os.environ.get(LOG_LEVEL_ENV)
    if not raw or not raw.strip():
        return None
    level = raw.strip().upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f'Error: {LOG_LEVEL_ENV} must be one of {sorted(VALID_LOG_LEVELS)}, got "{raw}".')
    return level


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_seconds(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number of seconds.")
    if value < 0:
        raise ConfigError(f"Error: {field_path} must be >= 0.")
    return float(value)


def ensure_optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(raw: Dict[str, Any], config_dir: Path) -> Settings:
    docker_raw = ensure_mapping(raw.get("docker"), "docker")
    docker_settings = DockerSettings(
        base_url=ensure_optional_str(docker_raw.get("base_url"), "docker.base_url"),
        timeout_seconds=ensure_int(
            docker_raw.get("timeout_seconds"),
            "docker.timeout_seconds",
            DEFAULT_DOCKER_TIMEOUT_SECONDS,
        ),
    )

    logging_raw = ensure_mapping(raw.get("logging"), "logging")
    level = ensure_optional_str(logging_raw.get("level"), "logging.level")
    if level is not None:
        level = level.upper()
        if level not in VALID_LOG_LEVELS:
            raise ConfigError(
                f'Error: logging.level must be one of {sorted(VALID_LOG_LEVELS)}, got "{level}".'
            )
    log_format = (ensure_optional_str(logging_raw.get("format"), "logging.format") or "json").lower()
    if log_format not in VALID_LOG_FORMATS:
        raise ConfigError(
            f'Error: logging.format must be one of {sorted(VALID_LOG_FORMATS)}, got "{log_format}".'
        )
    log_file = ensure_optional_str(logging_raw.get("file"), "logging.file")
    log_path: Optional[Path] = None
    if log_file is not None:
        log_path = Path(log_file)
        if not log_path.is_absolute():
            log_path = (config_dir / log_path).resolve()

    shutdown_raw = ensure_mapping(raw.get("shutdown"), "shutdown")
    join_timeout = ensure_seconds(
        shutdown_raw.get("join_timeout_seconds"),
        "shutdown.join_timeout_seconds",
        DEFAULT_JOIN_TIMEOUT_SECONDS,
    )

    return Settings(
        docker=docker_settings,
        # Environment wins over the file for the log level.
        logging=LoggingSettings(level=_env_log_level() or level or "INFO", format=log_format, file=log_path),
        join_timeout_seconds=join_timeout,
    )


def load_settings(config_path: Optional[Path]) -> Settings:
    if config_path is None:
        default_path = Path(DEFAULT_CONFIG).resolve()
        if not default_path.exists():
            return Settings.default()
        config_path = default_path
    payload = _load_config_payload(config_path)
    return parse_settings(payload, config_path.parent)


# ---------------------------------------------------------------------------
# Job scheduling engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FireResult:
    command: str
    outcome: str
    scheduled_for: datetime
    message: str = ""
    status_code: Optional[int] = None
    error: Optional[str] = None


def classify_fire(
    command: str,
    scheduled_for: datetime,
    started: StartResult,
    completion: Optional[WaitResult] = None,
) -> FireResult:
    if not started.ok:
        return FireResult(command, OUTCOME_START_FAILED, scheduled_for, error=started.error)
    if completion is None:
        return FireResult(command, OUTCOME_NO_RESPONSE, scheduled_for)
    return FireResult(
        command,
        completion.kind,
        scheduled_for,
        message=completion.message,
        status_code=completion.status_code,
        error=completion.error,
    )


class JobLoop:
    """Drives one cron job forever: wait for the next fire, start, await."""

    def __init__(
        self,
        job: CronJob,
        backend: DockerBackend,
        cancel_event: threading.Event,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.job = job
        self.backend = backend
        self._cancel = cancel_event
        self._clock = clock
        self.fire_count = 0
        self.last_result: Optional[FireResult] = None
        self.log = JobLogAdapter(
            logger,
            {"container": job.command, "schedule": str(job.schedule)},
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> None:
        self.log.debug("Scheduling job")
        while not self.cancelled:
            now = self._clock()
            next_fire = self.job.schedule.next_after(now)
            # Assume the wall clock is not manipulated while asleep.
            self.log.debug(
                "Sleeping until next launch at %s",
                next_fire.isoformat(),
                extra={"scheduled_for": next_fire.isoformat()},
            )
            if not self.sleep_until(next_fire):
                break
            self.log.debug("Wakeup")
            result = self.fire(next_fire)
            if result is None:
                break
        self.log.debug("Job loop stopped")

    def sleep_until(self, target: datetime) -> bool:
        """Block until ``target``; False if cancelled first."""
        while True:
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return not self.cancelled
            if self._cancel.wait(remaining):
                return False

    def fire(self, scheduled_for: datetime) -> Optional[FireResult]:
        """Run one start+await cycle. Returns None when cancelled mid-flight."""
        command = self.job.command
        started = self.backend.start(command)
        if self.cancelled:
            return None
        if not started.ok:
            result = classify_fire(command, scheduled_for, started)
        else:
            completion = self.backend.wait(command)
            if self.cancelled:
                return None
            result = classify_fire(command, scheduled_for, started, completion)
        self.fire_count += 1
        self.last_result = result
        self.report(result)
        return result

    def report(self, result: FireResult) -> None:
        extra = {"outcome": result.outcome, "status_code": result.status_code}
        if result.outcome == OUTCOME_SUCCESS:
            self.log.debug("Successful exit", extra=extra)
        elif result.outcome == OUTCOME_START_FAILED:
            self.log.warning("Failed to start container: %s", result.error, extra=extra)
        elif result.outcome == OUTCOME_FAILED_MESSAGE:
            self.log.warning("Container wait request returned error message: %s", result.message, extra=extra)
        elif result.outcome == OUTCOME_FAILED_STATUS:
            self.log.warning("Job did not succeed: status_code=%s", result.status_code, extra=extra)
        elif result.outcome == OUTCOME_BACKEND_ERROR:
            self.log.warning("Error waiting for container completion: %s", result.error, extra=extra)
        else:
            self.log.warning("No response to wait request on Docker API", extra=extra)


# ---------------------------------------------------------------------------
# Lifecycle coordinator
# ---------------------------------------------------------------------------


class Scheduler:
    """Owns one thread per job loop and tears them all down together."""

    def __init__(
        self,
        jobs: List[CronJob],
        backend: DockerBackend,
        clock: Callable[[], datetime] = utc_now,
        join_timeout_seconds: float = DEFAULT_JOIN_TIMEOUT_SECONDS,
    ):
        self.backend = backend
        self.join_timeout_seconds = join_timeout_seconds
        self._cancel = threading.Event()
        self._shutdown_requested = False
        self.loops = [JobLoop(job, backend, self._cancel, clock=clock) for job in jobs]
        self._threads: List[threading.Thread] = []

    @property
    def threads(self) -> List[threading.Thread]:
        return list(self._threads)

    def start(self) -> None:
        for idx, loop in enumerate(self.loops):
            thread = threading.Thread(target=loop.run, daemon=True, name=f"docker-cron-job-{idx}")
            thread.start()
            self._threads.append(thread)
        logger.info("Started %s job loop(s)", len(self._threads))

    def request_shutdown(self, signum: Optional[int] = None, frame: Any = None) -> None:
        # Runs inside the signal handler: only flip the flag.
        self._shutdown_requested = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def run_until_shutdown(self, poll_seconds: float = DEFAULT_SHUTDOWN_POLL_SECONDS) -> None:
        while not self._shutdown_requested:
            time.sleep(poll_seconds)

    def shutdown(self) -> int:
        """Cancel every loop; returns how many were abandoned mid-call."""
        self._cancel.set()
        deadline = time.monotonic() + self.join_timeout_seconds
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        abandoned = sum(1 for thread in self._threads if thread.is_alive())
        if abandoned:
            logger.info("Abandoning %s job loop(s) blocked on the Docker API", abandoned)
        return abandoned


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(crontab_path: Path) -> int:
    jobs = load_crontab(crontab_path)
    print(f"Crontab valid: {crontab_path}")
    print(f"Total jobs: {len(jobs)}")
    for job in jobs:
        print(f"- {job.schedule} -> {job.command}")
    return 0


def command_preview(crontab_path: Path, count: int, now_utc: Optional[datetime] = None) -> int:
    jobs = load_crontab(crontab_path)
    now = now_utc or utc_now()
    for job in jobs:
        print("=" * 80)
        print(f"Container: {job.command}")
        print(f"Schedule: {job.schedule}")
        print(f"Next {count} run(s):")
        for run_dt in job.schedule.upcoming(now, count):
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_daemon(crontab_path: Path, settings: Settings) -> int:
    jobs = load_crontab(crontab_path)

    logger.info("Connecting to Docker")
    backend = DockerBackend.connect(
        base_url=settings.docker.base_url,
        timeout=settings.docker.timeout_seconds,
    )
    logger.info("Docker connection OK, starting scheduler with %s job(s)", len(jobs))

    scheduler = Scheduler(jobs, backend, join_timeout_seconds=settings.join_timeout_seconds)
    previous_handler = signal.signal(signal.SIGTERM, scheduler.request_shutdown)
    scheduler.start()
    try:
        scheduler.run_until_shutdown()
        logger.info("Stopping due to SIGTERM")
        return 0
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user.")
        return 130
    finally:
        scheduler.shutdown()
        signal.signal(signal.SIGTERM, previous_handler)
        backend.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="docker-cron: start Docker containers on cron schedules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help=f"Path to settings YAML (default: {DEFAULT_CONFIG} if present)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon_parser = subparsers.add_parser("daemon", help="Schedule containers until SIGTERM")
    daemon_parser.add_argument("crontab", help="Path to crontab file")

    validate_parser = subparsers.add_parser("validate", help="Parse crontab and list jobs")
    validate_parser.add_argument("crontab", help="Path to crontab file")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("crontab", help="Path to crontab file")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    crontab_path = Path(args.crontab)

    try:
        settings = load_settings(Path(args.config).resolve() if args.config else None)
        setup_logging(settings.logging.level, settings.logging.format, settings.logging.file)
        if args.command == "validate":
            return command_validate(crontab_path)
        if args.command == "preview":
            if args.count <= 0:
                raise DockerCronError("--count must be >= 1")
            return command_preview(crontab_path, count=args.count)
        if args.command == "daemon":
            return command_daemon(crontab_path, settings)
        raise DockerCronError(f"Unsupported command: {args.command}")
    except (DockerCronError, CrontabError, BackendUnavailableError) as exc:
        if not logger.handlers:
            setup_logging()
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        if not logger.handlers:
            setup_logging()
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
