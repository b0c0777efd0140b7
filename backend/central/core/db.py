"""
数据库连接模块

管理数据库引擎，并提供按方言选择的 INSERT 构造器。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- "查找或创建"一律使用 INSERT ... ON CONFLICT，在存储层依靠唯一约束保证幂等，
  不要写成先查询再写入
"""
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, create_engine

from central.core.config import settings

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI))


def insert_for(session: Session, table: Any) -> Any:
    """
    返回当前会话方言对应的 INSERT 构造器

    PostgreSQL 与 SQLite 的 insert() 都支持 on_conflict_do_update /
    on_conflict_do_nothing，生产用前者，测试用后者。

    Args:
        session: 数据库会话
        table: SQLModel 模型类或 Table 对象

    Returns:
        方言 Insert 语句
    """
    target = getattr(table, "__table__", table)
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(target)
    if dialect == "sqlite":
        return sqlite.insert(target)
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
