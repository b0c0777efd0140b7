"""CRUD 操作模块（只 flush 的函数由调用方负责提交事务）"""
from . import catalog, identity, logs

__all__ = ["catalog", "identity", "logs"]
