"""Wire models for the wardrobe backend JSON envelope."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(_WireModel):
    """Every backend response wraps its payload in this shape."""

    status_code: int | None = Field(default=None, alias="statusCode")
    message: str = ""
    data: Any = None


class UploadedImage(_WireModel):
    file_name: str | None = Field(default=None, alias="fileName")
    download_url: str | None = Field(default=None, alias="downloadUrl")


class CreatedItems(_WireModel):
    count: int = 0
    item_ids: list[int] = Field(default_factory=list, alias="itemIds")


class FailedItem(_WireModel):
    image_url: str = Field(alias="imageUrl")
    reason: str = ""


class FailedItems(_WireModel):
    count: int = 0
    items: list[FailedItem] = Field(default_factory=list)


class PartialClassification(_WireModel):
    successful_items: CreatedItems = Field(default_factory=CreatedItems, alias="successfulItems")
    failed_items: FailedItems = Field(alias="failedItems")


class ManualItem(_WireModel):
    image_url: str = Field(alias="imageURLs")
    category_id: int = Field(alias="categoryId")


class Category(_WireModel):
    id: int
    name: str
    parent_id: int | None = Field(default=None, alias="parentId")
