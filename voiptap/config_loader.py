from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from voiptap.services.call_columns import DEFAULT_TIME_PRECISION, Column
from voiptap.services.voip_tap import FlowShow

LOGGER = logging.getLogger(__name__)


class CallsSettings(BaseModel):
    flow_show: FlowShow = FlowShow.ONLY_INVITES
    time_precision: int = DEFAULT_TIME_PRECISION

    @field_validator("flow_show", mode="before")
    @classmethod
    def normalize_flow_show(cls, value: object) -> object:
        if value is None:
            return FlowShow.ONLY_INVITES
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("time_precision")
    @classmethod
    def validate_time_precision(cls, value: int) -> int:
        if not 0 <= value <= 9:
            raise ValueError("time_precision must be between 0 and 9")
        return value


class TableSettings(BaseModel):
    sort_column: Column = Column.START_TIME
    sort_order: str = "ascending"

    @field_validator("sort_column", mode="before")
    @classmethod
    def normalize_sort_column(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value

    @field_validator("sort_order", mode="before")
    @classmethod
    def validate_sort_order(cls, value: object) -> str:
        text = str(value or "ascending").strip().lower()
        if text not in {"ascending", "descending"}:
            raise ValueError("sort_order must be ascending or descending")
        return text

    @property
    def descending(self) -> bool:
        return self.sort_order == "descending"


class FilterSettings(BaseModel):
    max_length: int = 0

    @field_validator("max_length")
    @classmethod
    def validate_max_length(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_length must be >= 0 (0 disables the protocol fallback)")
        return value


class AppConfig(BaseModel):
    calls: CallsSettings = Field(default_factory=CallsSettings)
    table: TableSettings = Field(default_factory=TableSettings)
    filter: FilterSettings = Field(default_factory=FilterSettings)


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(parsed)
        LOGGER.info(
            "Config loaded flow_show=%s sort=%s/%s filter_max_length=%s",
            cfg.calls.flow_show.value,
            cfg.table.sort_column.value,
            cfg.table.sort_order,
            cfg.filter.max_length,
            extra={"category": "CONFIG"},
        )
        return cfg
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
