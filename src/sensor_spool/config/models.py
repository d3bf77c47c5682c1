import os
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from sensor_spool.net.transport import Endpoint


class LogModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False
    sample_every: int = 1000


class DispatchModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    workers: int = Field(default=1, ge=1, le=2)
    capacity: int = Field(default=50, ge=1)
    overflow: Literal["execute_inline", "block_caller"] = "execute_inline"
    sampling_period_ms: int = Field(default=10, ge=1)


class StorageModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    directory: str = "./sensor_data"
    compress: bool = True
    max_segment_bytes: int = 1024**3
    rotation_interval_s: float = 3600.0
    min_forced_rotation_interval_s: float = 0.0
    buffer_bytes: int = 8 * 1024

    @field_validator("directory")
    @classmethod
    def _expand(cls, v: str) -> str:
        return os.path.expandvars(os.path.expanduser(v))

    @field_validator("max_segment_bytes", "buffer_bytes")
    def _positive(cls, v: int, info: ValidationInfo) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator("rotation_interval_s", "min_forced_rotation_interval_s")
    def _nonneg(cls, v: float, info: ValidationInfo) -> float:
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v


class UploadModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    host: str | None = None
    port: int | None = None
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = Field(default=3.0, ge=0)
    partial_receipt_codes: list[int] = Field(default_factory=lambda: [404, 500])
    connect_timeout_s: float = 30.0
    read_timeout_s: float = 60.0
    ping_timeout_s: float = 3.0
    workers: int = Field(default=2, ge=1, le=2)

    @model_validator(mode="after")
    def _check_endpoint(self):
        if self.host is None and self.port is None:
            return self
        Endpoint.parse(self.host, self.port)  # raises ValueError
        return self

    def endpoint(self) -> Endpoint | None:
        if self.host is None and self.port is None:
            return None
        return Endpoint.parse(self.host, self.port)


class SpoolModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    run_id: str = "local"
    user_id: str = "test"
    recording: bool = True
    log: LogModel = LogModel()
    dispatch: DispatchModel = DispatchModel()
    storage: StorageModel = StorageModel()
    upload: UploadModel = UploadModel()
