"""
存储访问包
"""

from .connection import MongoConnection, connect_and_auth

__all__ = [
    "MongoConnection",
    "connect_and_auth",
]
