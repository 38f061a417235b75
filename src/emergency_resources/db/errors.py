from __future__ import annotations


class ResourceConflictError(RuntimeError):
    """资源已被其他事件抢占（条件更新未命中 AVAILABLE 状态）。"""

    def __init__(self, resource_id: str, status: str | None = None) -> None:
        detail = f" (current status: {status})" if status else ""
        super().__init__(f"resource {resource_id!r} is not available{detail}")
        self.resource_id = resource_id
        self.status = status


class ResourceNotFoundError(RuntimeError):
    """资源不存在，或资源当前未绑定到指定事件。"""

    def __init__(self, resource_id: str, incident_id: str | None = None) -> None:
        if incident_id is None:
            message = f"resource {resource_id!r} not found"
        else:
            message = f"resource {resource_id!r} is not bound to incident {incident_id!r}"
        super().__init__(message)
        self.resource_id = resource_id
        self.incident_id = incident_id


class StoreUnavailableError(RuntimeError):
    """底层存储不可达（连接失败、连接池超时等）。"""
