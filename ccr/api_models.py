from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .workloads import ConfigBinding, Template, WorkloadSpec


class ConfigPutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entry_class: Literal["plain", "sensitive"] = Field("plain", alias="class", description="plain|sensitive")
    data: dict[str, str] = Field(default_factory=dict, description="Key/value pairs of this version")


class TemplateModel(BaseModel):
    image: str = Field(..., description="Docker image (name:tag)")
    internal_port: int = Field(..., ge=1, le=65535, description="Container port the replica listens on")
    health_path: str = Field("/health", description="Readiness endpoint path")
    command: list[str] | None = None
    env: dict[str, str] = Field(default_factory=dict, description="Static environment, overridden by bindings")


class BindingModel(BaseModel):
    entry: str = Field(..., description="Config entry name")
    mode: Literal["environment", "mountedFile"] = "environment"


class WorkloadRequest(BaseModel):
    replicas: int = Field(1, ge=1, le=50)
    template: TemplateModel
    bindings: list[BindingModel] = Field(default_factory=list)
    min_available: int | float = Field(0.75, description="Replica count (int) or ratio of replicas (float)")
    max_unavailable: int = Field(1, ge=1)
    max_batch_size: int | None = Field(None, ge=1)

    def to_spec(self, name: str) -> WorkloadSpec:
        return WorkloadSpec(
            name=name,
            replica_count=self.replicas,
            template=Template(
                image=self.template.image,
                internal_port=self.template.internal_port,
                health_path=self.template.health_path,
                command=self.template.command,
                env=dict(self.template.env),
            ),
            config_bindings=[ConfigBinding(entry_name=b.entry, injection_mode=b.mode) for b in self.bindings],
            min_available=self.min_available,
            max_unavailable=self.max_unavailable,
            max_batch_size=self.max_batch_size,
        )


class RollbackRequest(BaseModel):
    to_record_id: int | None = Field(None, description="Record to restore; latest Succeeded when omitted")
    wait: bool = False


class CancelRequest(BaseModel):
    rollback: bool = Field(True, description="Roll back after the current batch finishes")
