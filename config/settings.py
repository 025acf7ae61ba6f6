"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件，例如 DATABASE_URL=sqlite:///data/workshop.db
    2. 或直接设置同名环境变量
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/workshop.db"

    # ========== 开票 ==========
    default_tax_rate_percent: float = 10.0
    invoice_due_days: int = 30

    # ========== 报表 ==========
    recent_expense_limit: int = 10

    # ========== 日志 ==========
    log_level: str = "INFO"
    log_file: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
