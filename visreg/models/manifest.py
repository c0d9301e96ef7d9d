"""Baseline manifest data structures (persisted as manifest.json)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ScreenshotMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    storage_path: str = Field(alias="storagePath")  # "<group>/<label>/<env>.png"
    baseline_key: str = Field(alias="baselineKey")  # unique object key of the image


class BuildEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    build_key: str = Field(alias="buildKey")
    build_tag: str = Field(default="", alias="buildTag")
    store_bucket: str = Field(alias="storeBucket")
    created_date: str = Field(alias="createdDate")  # ISO timestamp
    screenshots: list[ScreenshotMapping] = Field(default_factory=list)


class Manifest(BaseModel):
    manifest: list[BuildEntry] = Field(default_factory=list)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)
