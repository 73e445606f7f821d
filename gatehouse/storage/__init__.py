"""Storage backends for Gatehouse."""

from gatehouse.storage.protocol import StorageProtocol
from gatehouse.storage.sqlalchemy_storage import SQLAlchemyStorage

__all__ = ["StorageProtocol", "SQLAlchemyStorage"]
