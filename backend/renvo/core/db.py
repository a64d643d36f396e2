"""
数据库连接模块

管理数据库引擎的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 确保在使用前导入所有模型（renvo.models），否则关系可能无法正确初始化
- 后台任务和定时任务在运行时读取 `engine`，测试中可以替换为 SQLite 引擎
"""
from sqlmodel import create_engine

from renvo.core.config import settings

# pool_pre_ping: 定时任务长时间空闲后连接可能已失效
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)
