"""功能模块聚合与公共导出。"""

from . import devices, executions, scheduling, scripts, tasks

__all__ = [
    "devices",
    "executions",
    "scheduling",
    "scripts",
    "tasks",
]
