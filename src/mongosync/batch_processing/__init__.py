"""
批处理系统包
目标端的批量并发写入
"""

from .writer import WriteBatch, WritePipeline, document_size

__all__ = [
    "WriteBatch",
    "WritePipeline",
    "document_size",
]
