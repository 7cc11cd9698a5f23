"""Request bodies for the HTTP API."""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

import unifier

_UNSAFE_NAME = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


class EncodingProfile(BaseModel):
    """
    Output settings chosen by the caller.

    Accepts the camelCase keys sent by the browser client (turboMode,
    ecoMode, outputName) as well as the field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    format:      str  = "mp4"
    quality:     str  = "standard"
    turbo:       bool = Field(False, alias="turboMode")
    eco:         bool = Field(False, alias="ecoMode")
    output_name: str  = Field("merged_media", alias="outputName")

    @field_validator("format")
    @classmethod
    def _check_format(cls, v: str) -> str:
        v = v.strip().lstrip(".").lower()
        if v not in unifier.OUTPUT_FORMATS:
            raise ValueError(f"unsupported output format {v!r}")
        return v

    @field_validator("quality")
    @classmethod
    def _check_quality(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in unifier.QUALITY_LEVELS:
            raise ValueError(f"quality must be one of {', '.join(unifier.QUALITY_LEVELS)}")
        return v

    @field_validator("output_name")
    @classmethod
    def _clean_name(cls, v: str) -> str:
        v = _UNSAFE_NAME.sub("_", v.strip())[:120].strip(". ")
        return v or "merged_media"

    @model_validator(mode="after")
    def _exclusive_modes(self) -> "EncodingProfile":
        mode = unifier.resolve_performance_mode(self.turbo, self.eco)
        self.turbo = mode == "turbo"
        self.eco = mode == "eco"
        return self

    @property
    def performance_mode(self) -> Optional[str]:
        return unifier.resolve_performance_mode(self.turbo, self.eco)


class SubmitJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_ids: list[str] = Field(alias="assetIds")
    profile:   EncodingProfile = Field(default_factory=EncodingProfile)


class ConfigModel(BaseModel):
    crf_low:                int = Field(ge=0, le=51)
    crf_standard:           int = Field(ge=0, le=51)
    crf_high:               int = Field(ge=0, le=51)
    audio_bitrate_low:      str
    audio_bitrate_standard: str
    audio_bitrate_high:     str
    preset:                 str
    threads:                int = Field(ge=0)
    turbo_preset:           str
    turbo_threads:          int = Field(ge=0)
    eco_preset:             str
    eco_threads:            int = Field(ge=0)
