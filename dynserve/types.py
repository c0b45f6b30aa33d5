"""
Instance file types

Pydantic models for the JSON file read by ``dynserve run``.
"""

import json
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .config import AllocationLimit, DefaultPort
from .registry import InstanceConfig


class InstanceSpec(BaseModel):
    """One instance to start"""
    name: str = Field(..., min_length=1, description="Logical instance name", examples=["api"])
    routes: str = Field(..., description="Path of a .py module defining routes", examples=["routes/api.py"])
    start_port: int = Field(
        DefaultPort.START.value,
        ge=1,
        le=AllocationLimit.MAX_PORT.value,
        description="First port to probe",
        examples=[3000],
    )
    views_path: Optional[str] = Field(None, description="Template directory override")
    assets_path: Optional[str] = Field(None, description="Static directory override")

    @field_validator("routes")
    @classmethod
    def routes_must_be_module(cls, value: str) -> str:
        if not value.endswith(".py"):
            raise ValueError("routes must point at a .py file")
        return value

    def to_config(self, base_dir: Optional[Path] = None) -> InstanceConfig:
        """
        Convert to an InstanceConfig.

        Relative paths are resolved against base_dir (the instance file's
        directory) when given.
        """
        def resolve(path: Optional[str]) -> Optional[str]:
            if path is None or base_dir is None:
                return path
            return str((base_dir / path).resolve())

        return InstanceConfig(
            name=self.name,
            route_source=resolve(self.routes),
            start_port=self.start_port,
            views_path=resolve(self.views_path),
            assets_path=resolve(self.assets_path),
        )


class InstancesFile(BaseModel):
    """Top-level instance file"""
    instances: List[InstanceSpec] = Field(..., min_length=1)

    @field_validator("instances")
    @classmethod
    def names_must_be_unique(cls, value: List[InstanceSpec]) -> List[InstanceSpec]:
        names = [spec.name for spec in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate instance names: {', '.join(duplicates)}")
        return value

    @classmethod
    def load(cls, path: Union[str, Path]) -> "InstancesFile":
        """
        Read and validate an instance file.

        Raises:
            OSError: If the file cannot be read
            pydantic.ValidationError: If the content is invalid
        """
        with open(path, "r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))

    def to_configs(self, base_dir: Optional[Path] = None) -> List[InstanceConfig]:
        return [spec.to_config(base_dir) for spec in self.instances]
