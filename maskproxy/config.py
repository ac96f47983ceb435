from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from maskproxy.core.analysis.chunking import WindowingConfig
from maskproxy.core.masking.placeholders import PlaceholderFormat, format_for_style
from maskproxy.core.masking.reversible import UnmaskOptions
from maskproxy.detectors.secret_detector import DEFAULT_SECRET_TYPES


class MaskingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    placeholder_style: Literal["angle", "bracket"] = "angle"
    show_markers: bool = False
    marker_text: str = "[protected]"
    stream_bounded_holdback: bool = True

    @property
    def placeholder_format(self) -> PlaceholderFormat:
        return format_for_style(self.placeholder_style)

    @property
    def unmask_options(self) -> UnmaskOptions:
        return UnmaskOptions(show_markers=self.show_markers, marker_text=self.marker_text)


class WindowingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_chars: int = Field(default=4000, ge=2)
    overlap_chars: int = Field(default=200, ge=0)

    @model_validator(mode="after")
    def _validate_overlap(self) -> "WindowingSettings":
        if self.overlap_chars >= self.max_chars:
            raise ValueError("windowing.overlap_chars must be smaller than windowing.max_chars")
        return self

    def to_config(self) -> WindowingConfig:
        return WindowingConfig(max_chars=self.max_chars, overlap_chars=self.overlap_chars)


class PIIDetectionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    entities: list[str] = Field(
        default_factory=lambda: [
            "PERSON",
            "EMAIL_ADDRESS",
            "PHONE_NUMBER",
            "CREDIT_CARD",
            "IBAN_CODE",
            "IP_ADDRESS",
            "LOCATION",
        ]
    )
    score_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    language: str = "en"
    scan_roles: list[str] = Field(default_factory=lambda: ["user", "assistant"])
    windowing: WindowingSettings = Field(default_factory=WindowingSettings)
    allow_partial: bool = False


class SecretsDetectionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    action: Literal["mask", "block", "passthrough"] = "mask"
    entities: list[str] = Field(default_factory=lambda: list(DEFAULT_SECRET_TYPES))
    max_scan_chars: int = Field(default=200_000, ge=0)

    @model_validator(mode="after")
    def _validate_entities(self) -> "SecretsDetectionSettings":
        unknown = sorted(set(self.entities) - set(DEFAULT_SECRET_TYPES))
        if unknown:
            raise ValueError(f"secrets_detection.entities has unknown types: {', '.join(unknown)}")
        return self


class SessionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl_seconds: int = Field(default=3600, ge=1)
    allow_missing_context: bool = False


class ProxyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    masking: MaskingSettings = Field(default_factory=MaskingSettings)
    pii_detection: PIIDetectionSettings = Field(default_factory=PIIDetectionSettings)
    secrets_detection: SecretsDetectionSettings = Field(default_factory=SecretsDetectionSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)


def load_proxy_config(path: str | Path) -> ProxyConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw = yaml.safe_load(file) or {}
    return ProxyConfig.model_validate(raw)
