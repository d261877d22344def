"""Async wrapper around the wardrobe backend endpoints."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import httpx
from pydantic import ValidationError

from wardrobe.api.schemas import (
    Category,
    CreatedItems,
    Envelope,
    ManualItem,
    PartialClassification,
    UploadedImage,
)
from wardrobe.config.settings import Settings
from wardrobe.upload.models import ClassificationOutcome, ManualAssignment, RejectedAsset, UploadItem

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]

# The backend answers 404 (and sometimes 207) when part of the batch was not classified.
PARTIAL_STATUSES = frozenset({404, 207})


class WardrobeRequestError(RuntimeError):
    """Raised when the backend cannot be reached or answers unexpectedly."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class WardrobeAPIClient:
    """Provides the upload, classification and category calls."""

    def __init__(
        self,
        settings: Settings,
        *,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=settings.api_base_url.rstrip("/"),
            timeout=settings.request_timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""

        await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        if self._token_provider is None:
            return {}
        token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        files: Iterable[tuple[str, tuple[str, bytes, str]]] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                endpoint,
                json=json_body,
                params=params,
                files=files,
                headers=await self._auth_headers(),
            )
        except httpx.TimeoutException as exc:
            raise WardrobeRequestError(f"Timed out waiting for {endpoint}.") from exc
        except httpx.HTTPError as exc:
            raise WardrobeRequestError(f"Request to {endpoint} failed: {exc}") from exc

    @staticmethod
    def _envelope(response: httpx.Response) -> Envelope:
        if not response.content:
            return Envelope()
        try:
            return Envelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise WardrobeRequestError(
                f"Backend returned a malformed body for {response.request.url.path}.",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _unexpected(response: httpx.Response) -> WardrobeRequestError:
        return WardrobeRequestError(
            f"Backend returned {response.status_code}: {response.text}",
            status_code=response.status_code,
        )

    async def upload_asset(self, item: UploadItem, mime_type: str | None = None) -> str:
        """Upload one image to object storage and return its download URL."""

        content_type = mime_type or item.mime_type or mimetypes.guess_type(item.uri)[0] or "image/jpeg"
        try:
            payload = await asyncio.to_thread(item.read_bytes)
        except OSError as exc:
            raise WardrobeRequestError(f"Cannot read {item.display_name}: {exc}") from exc
        files = [("file", (item.display_name, payload, content_type))]
        response = await self._request("POST", "/minio/upload", files=files)
        if response.status_code != 200:
            raise self._unexpected(response)

        envelope = self._envelope(response)
        try:
            image = UploadedImage.model_validate(envelope.data or {})
        except ValidationError as exc:
            raise WardrobeRequestError("Upload response has no image data.", status_code=200) from exc
        if not image.download_url:
            raise WardrobeRequestError(
                envelope.message or "Upload response has no download URL.",
                status_code=200,
            )
        return image.download_url

    async def classify_auto(self, user_id: int, urls: Sequence[str]) -> ClassificationOutcome:
        """Ask the backend to categorise the uploaded images and create items."""

        response = await self._request(
            "POST",
            "/items/bulk-upload/auto",
            json_body={"userId": user_id, "imageURLs": list(urls)},
        )
        if response.status_code == 201:
            envelope = self._envelope(response)
            try:
                created = CreatedItems.model_validate(envelope.data or {})
            except ValidationError as exc:
                raise WardrobeRequestError("Malformed classification result.", status_code=201) from exc
            return ClassificationOutcome(
                item_ids=tuple(created.item_ids),
                accepted_count=created.count or len(created.item_ids) or len(urls),
            )

        if response.status_code in PARTIAL_STATUSES:
            envelope = self._envelope(response)
            try:
                partial = PartialClassification.model_validate(envelope.data)
            except ValidationError as exc:
                raise WardrobeRequestError(
                    envelope.message or "Classification endpoint returned no partial result.",
                    status_code=response.status_code,
                ) from exc
            return ClassificationOutcome(
                item_ids=tuple(partial.successful_items.item_ids),
                accepted_count=partial.successful_items.count,
                rejected=tuple(
                    RejectedAsset(url=failed.image_url, reason=failed.reason)
                    for failed in partial.failed_items.items
                ),
            )

        raise self._unexpected(response)

    async def classify_manual(self, user_id: int, assignments: Sequence[ManualAssignment]) -> None:
        """Create items for rejected images using the categories the user picked."""

        items = [
            ManualItem(image_url=assignment.url, category_id=assignment.category_id).model_dump(by_alias=True)
            for assignment in assignments
        ]
        response = await self._request(
            "POST",
            "/items/bulk-upload/manual",
            json_body={"userId": user_id, "itemsUpload": items},
        )
        if response.status_code != 201:
            raise self._unexpected(response)

    async def analyze_items(self, item_ids: Sequence[int]) -> str:
        """Request AI confidence analysis for freshly created items."""

        response = await self._request("POST", "/items/analysis", json_body={"itemIds": list(item_ids)})
        if not response.is_success:
            raise self._unexpected(response)
        return self._envelope(response).message

    async def list_root_categories(self) -> list[Category]:
        """Return top-level categories (tops, bottoms, shoes...)."""

        return await self._list_categories("/categories/root")

    async def list_child_categories(self, parent_id: int) -> list[Category]:
        """Return categories nested under ``parent_id``."""

        return await self._list_categories(f"/categories/parent/{parent_id}")

    async def _list_categories(self, endpoint: str) -> list[Category]:
        response = await self._request(
            "GET",
            endpoint,
            params={"pageIndex": 1, "pageSize": 100, "takeAll": "true", "search": ""},
        )
        if not response.is_success:
            raise self._unexpected(response)
        data = self._envelope(response).data or {}
        rows = data.get("data", []) if isinstance(data, Mapping) else data
        try:
            return [Category.model_validate(row) for row in rows]
        except ValidationError as exc:
            logger.error("Unexpected category payload from %s: %s", endpoint, data)
            raise WardrobeRequestError("Malformed category list.", status_code=response.status_code) from exc
