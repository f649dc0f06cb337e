from __future__ import annotations


class BinSyncError(RuntimeError):
    pass


class ConfigError(BinSyncError):
    pass


class StorageError(BinSyncError):
    pass


class SensorReadError(BinSyncError):
    pass


class BinNotFoundError(BinSyncError, LookupError):
    def __init__(self, bin_id: str) -> None:
        super().__init__(f"Bin not found: {bin_id}")
        self.bin_id = bin_id


class PipelineError(BinSyncError):
    pass


class UnknownPipelineError(PipelineError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown pipeline: {name}")
        self.name = name
