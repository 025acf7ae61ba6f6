"""修理厂后台数据库模块。

对外只暴露统一门面 DatabaseManager 和错误类型；
各子仓库通过 DatabaseManager 的属性访问。
"""
from .manager import DatabaseManager
from .errors import (
    WorkshopError, ValidationError, ConflictError, NotFoundError, StoreError,
)

__all__ = [
    "DatabaseManager",
    "WorkshopError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "StoreError",
]
