"""
Database package: SQLAlchemy connection, tables and the SQL case store.
"""

from .connection import Base, create_db_engine, init_db
from .sql_store import SqlCaseStore

__all__ = ["Base", "create_db_engine", "init_db", "SqlCaseStore"]
