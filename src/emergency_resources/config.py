from __future__ import annotations

import os
from dataclasses import dataclass

import structlog

_logger = structlog.get_logger(__name__)

try:
    # 说明：根据 APP_ENV 选择性加载环境文件；默认回退到 dev.env
    from dotenv import load_dotenv

    base_dir: str = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
    config_dir: str = os.path.join(base_dir, "config")

    env_name: str = (os.getenv("APP_ENV") or "").strip().lower()
    if env_name in {"staging", "production"}:
        env_file: str = os.path.join(config_dir, f"env.{env_name}")
    else:
        env_file = os.path.join(config_dir, "dev.env")

    # 不覆盖进程里已存在的环境变量
    load_dotenv(env_file, override=False)
    _logger.info("dotenv_env_selected", app_env=env_name or "(default:dev)", file=env_file)
except Exception as exc:
    _logger.warning("dotenv_load_skipped", error=str(exc))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning("config_int_parse_failed", key=name, raw=raw, fallback=default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        _logger.warning("config_float_parse_failed", key=name, raw=raw, fallback=default)
        return default


@dataclass(frozen=True)
class AppConfig:
    postgres_dsn: str | None
    pg_pool_min_size: int
    pg_pool_max_size: int
    pg_pool_timeout_seconds: float
    allocation_commit_delay_seconds: float
    log_level: str
    log_json: bool

    @staticmethod
    def load_from_env() -> "AppConfig":
        min_size = max(_env_int("PG_POOL_MIN_SIZE", 1), 1)
        max_size = _env_int("PG_POOL_MAX_SIZE", 4)
        if max_size < min_size:
            _logger.warning("pg_pool_size_adjusted", min_size=min_size, max_size=max_size)
            max_size = min_size

        commit_delay = _env_float("ALLOCATION_COMMIT_DELAY_SECONDS", 0.1)
        if commit_delay < 0:
            commit_delay = 0.0

        dsn = os.getenv("POSTGRES_DSN")
        return AppConfig(
            postgres_dsn=dsn.strip() if dsn and dsn.strip() else None,
            pg_pool_min_size=min_size,
            pg_pool_max_size=max_size,
            pg_pool_timeout_seconds=_env_float("PG_POOL_TIMEOUT_SECONDS", 10.0),
            allocation_commit_delay_seconds=commit_delay,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", False),
        )
