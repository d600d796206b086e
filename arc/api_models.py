from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class RegisterWorkloadRequest(BaseModel):
    id: str = Field(..., description="Workload id (dns-safe)")
    revision: str = Field(..., description="Initial revision, e.g. v1")
    replicas: int = Field(1, ge=0, le=1000)
    min_replicas: int = Field(1, ge=0, le=1000)
    max_replicas: int = Field(10, ge=1, le=1000)
    target_utilization: float = Field(80.0, gt=0, le=1000, description="Target utilization percentage")
    max_surge: int = Field(1, ge=0, le=100)
    max_unavailable: int = Field(0, ge=0, le=100)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RegisterWorkloadRequest":
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas must not exceed max_replicas")
        if self.max_surge == 0 and self.max_unavailable == 0:
            raise ValueError("max_surge and max_unavailable cannot both be 0")
        return self


class BoundsRequest(BaseModel):
    min_replicas: int | None = Field(None, ge=0, le=1000)
    max_replicas: int | None = Field(None, ge=1, le=1000)
    target_utilization: float | None = Field(None, gt=0, le=1000)
    max_surge: int | None = Field(None, ge=0, le=100)
    max_unavailable: int | None = Field(None, ge=0, le=100)


class RolloutRequest(BaseModel):
    revision: str
    replicas: int | None = Field(None, ge=0, le=1000, description="Defaults to the current target")
