"""
统一日志模块

提供全局structlog配置，包括：
- 统一processor链（时间戳、堆栈、trace-id注入）
- JSON/控制台双渲染模式
- 日志计数的Prometheus指标
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from prometheus_client import Counter

# ========== ContextVar：跨异步边界的trace-id传递 ==========
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# 日志计数器：按级别和模块统计日志数量
log_count_metric = Counter(
    "emergency_resources_log_total",
    "日志总数（按级别和模块分类）",
    ["level", "module"],
)


def add_trace_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    从ContextVar中提取trace-id并注入到日志上下文

    用法：
        from emergency_resources.logging import set_trace_id
        set_trace_id("incident-12345")
        logger.info("allocation_started")  # 自动包含trace_id字段
    """
    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def add_prometheus_metrics(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """日志事件计数到Prometheus，用于监控冲突/故障日志激增。"""
    level = event_dict.get("level", "info")
    module = event_dict.get("logger", "unknown")
    log_count_metric.labels(level=level, module=module).inc()
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """
    配置全局structlog

    Args:
        json_logs: 是否输出JSON格式（生产环境推荐True）
        log_level: 日志级别（DEBUG/INFO/WARNING/ERROR）

    使用方式：
        # 在进程启动时调用一次
        from emergency_resources.logging import configure_logging
        configure_logging(json_logs=True, log_level="INFO")

        # 之后所有模块直接使用
        import structlog
        logger = structlog.get_logger(__name__)
        logger.info("resource_committed", resource_id="...")
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors: list[Any] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_trace_id,
        add_prometheus_metrics,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def set_trace_id(trace_id: str) -> None:
    """设置当前协程的trace-id（通常为事件/会话ID）。"""
    trace_id_var.set(trace_id)


def clear_trace_id() -> None:
    """清除当前协程的trace-id（防止上下文泄漏）"""
    trace_id_var.set(None)


# 在模块导入时自动配置（开发环境使用控制台渲染）
# 生产环境应在启动时显式调用 configure_logging(json_logs=True)
configure_logging(json_logs=False, log_level="INFO")
