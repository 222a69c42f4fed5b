"""Pydantic models describing engine settings and crawl runs."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

if TYPE_CHECKING:  # pragma: no cover
    from ..engine.retry import RetryPolicy

OutputFormat = Literal["json", "jsonl", "csv", "txt"]


class StageSpec(BaseModel):
    """A processing stage referenced by dotted path plus constructor options."""

    path: str
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("stage path cannot be empty")
        if "." not in value and ":" not in value:
            raise ValueError(f"stage path must be a dotted path: {value!r}")
        return value

    def build(self) -> Any:
        from ..pipeline.stages import load_stage

        return load_stage(self.path, **self.options)


class EngineSettings(BaseModel):
    """Engine knobs. Every field is optional and has a default."""

    concurrency_limit: int = Field(default=8, ge=1)
    delay_seconds: float = Field(default=0.0, ge=0)
    delay_jitter_fraction: float = Field(default=0.5, ge=0)
    retry_limit: int = Field(default=2, ge=0)
    stages: list[StageSpec] = Field(default_factory=list)

    @field_validator("stages", mode="before")
    @classmethod
    def _coerce_stages(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("stages expects a list")
        # Allow bare dotted paths as shorthand for {path: ...}.
        return [{"path": item} if isinstance(item, str) else item for item in value]

    def build_stages(self) -> list[Any]:
        return [spec.build() for spec in self.stages]

    def retry_policy(self) -> "RetryPolicy":
        from ..engine.retry import RetryPolicy

        return RetryPolicy(
            retry_limit=self.retry_limit,
            delay=self.delay_seconds,
            jitter_fraction=self.delay_jitter_fraction,
        )


class RunConfig(BaseModel):
    """A complete crawl definition loadable from YAML or JSON."""

    spider: str
    spider_options: dict[str, Any] = Field(default_factory=dict)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    output_dir: Path = Field(default=Path("data/outputs"))
    output_formats: list[OutputFormat] = Field(default_factory=lambda: ["json"])
    validate_records: bool = True

    @field_validator("output_dir", mode="before")
    @classmethod
    def _coerce_dir(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("output_formats", mode="before")
    @classmethod
    def _coerce_formats(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _validate_spider(self) -> "RunConfig":
        if ":" not in self.spider and "." not in self.spider:
            raise ValueError("spider must be a dotted path such as 'package.module:SpiderClass'")
        return self

    def resolved_output_dir(self, base_dir: Path) -> Path:
        if not self.output_dir.is_absolute():
            return (base_dir / self.output_dir).resolve()
        return self.output_dir


__all__ = ["EngineSettings", "OutputFormat", "RunConfig", "StageSpec"]
