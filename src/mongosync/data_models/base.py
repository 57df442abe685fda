"""
基础数据模型
提供配置模型的通用功能和同步过程中的错误类型
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel as PydanticBaseModel, ConfigDict


class BaseModel(PydanticBaseModel):
    """基础Pydantic模型"""

    model_config = ConfigDict(
        # 使用枚举值
        use_enum_values=True,
        # 验证赋值
        validate_assignment=True,
        # 任意类型允许（OplogTime、bson类型）
        arbitrary_types_allowed=True,
    )


class ValueObject(BaseModel):
    """值对象基类"""

    # 值对象不可变，相等性基于值
    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,
    )


class DomainError(Exception):
    """领域错误基类"""

    def __init__(self, message: str, error_code: str = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class MongoSyncError(DomainError):
    """同步错误基类，携带失败阶段、命名空间和最后应用的位置"""

    def __init__(self, message: str, error_code: str = None,
                 phase: str = None, namespace: str = None, position: Any = None):
        super().__init__(message, error_code)
        self.phase = phase
        self.namespace = namespace
        self.position = position

    def with_context(self, phase: str = None, namespace: str = None,
                     position: Any = None) -> 'MongoSyncError':
        """补充上下文（已有的值不覆盖）"""
        if self.phase is None:
            self.phase = phase
        if self.namespace is None:
            self.namespace = namespace
        if self.position is None:
            self.position = position
        return self

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "error_code": self.error_code,
            "phase": self.phase,
            "namespace": self.namespace,
            "position": str(self.position) if self.position is not None else None,
        }


class ConfigurationError(MongoSyncError):
    """配置错误"""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION")


class ConnectError(MongoSyncError):
    """连接或认证失败"""

    def __init__(self, message: str, server: str = None):
        super().__init__(message, "CONNECTION")
        self.server = server


class VersionUnsupportedError(MongoSyncError):
    """版本之间没有已知的转换方式"""

    def __init__(self, message: str, src_version: Optional[str] = None,
                 dst_version: Optional[str] = None):
        super().__init__(
            f"{message} (source version: {src_version or 'n/a'}, "
            f"destination version: {dst_version or 'n/a'})",
            "VERSION_UNSUPPORTED",
        )
        self.src_version = src_version
        self.dst_version = dst_version


class OplogNotFoundError(MongoSyncError):
    """源端没有可用的oplog"""

    def __init__(self, message: str, namespace: str = None):
        super().__init__(message, "NO_OPLOG", namespace=namespace)


class OplogWindowError(MongoSyncError):
    """请求的oplog区间在源端不存在"""

    def __init__(self, message: str, position: Any = None):
        super().__init__(message, "OPLOG_WINDOW", position=position)


class BatchWriteError(MongoSyncError):
    """批量写入在重试后仍然失败"""

    def __init__(self, message: str, namespace: str = None, position: Any = None,
                 attempts: int = 0):
        super().__init__(message, "BATCH_WRITE", namespace=namespace, position=position)
        self.attempts = attempts
