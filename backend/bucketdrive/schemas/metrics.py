"""Usage metrics schemas."""
from bucketdrive.schemas.base import CamelModel


class StorageUsage(CamelModel):
    used: int
    total: int


class OperationUsage(CamelModel):
    count: int
    total: int


class UsageMetricsResponse(CamelModel):
    storage: StorageUsage
    class_a: OperationUsage
    class_b: OperationUsage
