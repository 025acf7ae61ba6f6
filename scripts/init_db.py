"""初始化数据库"""
import sys
import os
from typing import Optional

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from database.models import SparePart
from config.business_config import business_config
from config.logging_config import setup_logging
from config.settings import settings
from loguru import logger


def _ensure_sqlite_dir(database_url: str) -> None:
    """SQLite 文件所在目录不存在时创建。"""
    prefix = "sqlite:///"
    if database_url.startswith(prefix):
        directory = os.path.dirname(database_url[len(prefix):])
        if directory:
            os.makedirs(directory, exist_ok=True)


def init_database(database_url: Optional[str] = None) -> DatabaseManager:
    """初始化数据库和种子数据。

    按备件名称去重，重复执行不会产生重复备件或重复的期初库存流水。

    Args:
        database_url: 数据库连接URL（可选，默认使用settings配置）。

    Returns:
        已初始化的 DatabaseManager。
    """
    database_url = database_url or settings.database_url
    logger.info(f"Initializing database: {database_url}")
    _ensure_sqlite_dir(database_url)

    db = DatabaseManager(database_url)

    logger.info("Creating tables...")
    db.create_tables()

    logger.info("Inserting seed data...")
    existing = {p.name for p in db.spare_parts.get_all(SparePart)}
    for part in business_config.get_spare_part_seed():
        if part["name"] in existing:
            logger.debug(f"Spare part already present: {part['name']}")
            continue
        db.spare_parts.create(part)
        logger.info(f"Created spare part: {part['name']}")

    logger.info("Database initialization completed!")
    return db


if __name__ == "__main__":
    setup_logging()
    init_database().close()
