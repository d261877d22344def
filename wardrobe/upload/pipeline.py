"""Orchestration of a batch upload: storage, auto classification, manual fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Protocol, Sequence

from wardrobe.api.client import WardrobeRequestError
from wardrobe.upload import state_machine as fsm
from wardrobe.upload.errors import (
    AllUploadsFailedError,
    AuthError,
    ClassificationError,
    InputError,
    ManualClassificationError,
    UploadPipelineError,
)
from wardrobe.upload.models import (
    ALLOWED_MIME_TYPES,
    ClassificationOutcome,
    ManualAssignment,
    PipelineProgress,
    UploadBatchResult,
    UploadedAsset,
    UploadFailure,
    UploadItem,
    needs,
    plural,
)
from wardrobe.upload.state_machine import PipelineEvent, PipelineSnapshot, PipelineState

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10

Listener = Callable[[PipelineEvent], None]


class UploadBackend(Protocol):
    """Remote calls the pipeline depends on."""

    async def upload_asset(self, item: UploadItem, mime_type: str | None = None) -> str: ...

    async def classify_auto(self, user_id: int, urls: Sequence[str]) -> ClassificationOutcome: ...

    async def classify_manual(self, user_id: int, assignments: Sequence[ManualAssignment]) -> None: ...

    async def analyze_items(self, item_ids: Sequence[int]) -> str: ...


class IdentityProvider(Protocol):
    """Source of the signed-in user's id."""

    async def get_user_id(self) -> int | None: ...


class _RunAbandoned(Exception):
    """Internal signal: the run was reset while awaiting a response."""


class UploadPipeline:
    """Drives one batch of images from the device to wardrobe items.

    The caller must not start a second ``run`` while one is in flight.
    ``reset`` abandons the current run: outstanding requests still complete,
    but their results are discarded.
    """

    def __init__(
        self,
        backend: UploadBackend,
        identity: IdentityProvider,
        *,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        if not 1 <= max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_batch_size must be between 1 and {MAX_BATCH_SIZE}, got {max_batch_size}")
        self._backend = backend
        self._identity = identity
        self._max_batch_size = max_batch_size
        self._snapshot = fsm.baseline()
        self._listeners: list[Listener] = []
        self._generation = 0
        self._user_id: int | None = None
        self._submitted = 0

    @property
    def snapshot(self) -> PipelineSnapshot:
        return self._snapshot

    @property
    def state(self) -> PipelineState:
        return self._snapshot.state

    @property
    def progress(self) -> PipelineProgress:
        return self._snapshot.progress

    @property
    def pending_urls(self) -> list[str]:
        return list(self._snapshot.pending_urls)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for state changes and return an unsubscribe hook."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def reset(self) -> None:
        """Return to the pre-run baseline, abandoning any run in flight."""

        self._generation += 1
        self._user_id = None
        self._submitted = 0
        if self._snapshot != fsm.baseline():
            self._apply(fsm.baseline())

    async def run(self, images: Iterable[UploadItem]) -> PipelineSnapshot:
        """Upload ``images`` and classify them.

        Returns the snapshot once the run is ``COMPLETE`` or waiting in
        ``PENDING_MANUAL``. Terminal failures are recorded in the snapshot and
        re-raised.
        """

        batch = list(images)
        if not batch:
            raise InputError("no images selected")
        if len(batch) > self._max_batch_size:
            raise InputError("batch too large")

        self.reset()
        token = self._generation
        try:
            user_id = await self._identity.get_user_id()
            self._ensure_current(token)
            if user_id is None:
                raise AuthError("User not found. Please log in again.")
            self._user_id = user_id

            uploaded = await self._upload_batch(batch, token)
            if not uploaded.uploaded:
                raise AllUploadsFailedError(
                    "All images failed to upload. Please check your images and try again.",
                    failures=uploaded.failed,
                )
            if uploaded.failed:
                logger.warning(
                    "Only %d/%d images uploaded; continuing with the uploaded subset.",
                    len(uploaded.uploaded),
                    len(batch),
                )

            await self._classify(uploaded.urls, token)
        except _RunAbandoned:
            logger.info("Upload run was reset; discarding late results.")
        except UploadPipelineError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            self._abort(exc, token)
            raise
        return self._snapshot

    async def submit_manual(self, assignments: Iterable[ManualAssignment]) -> PipelineSnapshot:
        """Resume a run paused for manual categories."""

        if self._snapshot.state is not PipelineState.PENDING_MANUAL:
            raise InputError("no items are waiting for a manual category")
        chosen = list(assignments)
        self._validate_assignments(chosen)

        token = self._generation
        added = self._snapshot.progress.current + len(chosen)
        item_ids = self._snapshot.item_ids
        self._apply(fsm.start_manual(self._snapshot, len(chosen)))
        try:
            try:
                await self._backend.classify_manual(self._user_id, chosen)
            except WardrobeRequestError as exc:
                self._ensure_current(token)
                logger.error("Manual classification failed: %s", exc)
                raise ManualClassificationError(f"Failed to add items: {exc}") from exc
            self._ensure_current(token)
            self._apply(fsm.complete(self._snapshot, added=added, total=self._submitted, item_ids=item_ids))
            logger.info("Manual classification finished, %s added.", plural(added, "item"))
        except _RunAbandoned:
            logger.info("Upload run was reset; discarding late results.")
        except UploadPipelineError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            self._abort(exc, token)
            raise
        return self._snapshot

    async def analyze(self) -> str:
        """Ask the backend to score the items created by a completed run."""

        if self._snapshot.state is not PipelineState.COMPLETE or not self._snapshot.item_ids:
            raise InputError("nothing to analyze; finish an upload first")
        return await self._backend.analyze_items(list(self._snapshot.item_ids))

    async def _upload_batch(self, images: Sequence[UploadItem], token: int) -> UploadBatchResult:
        result = UploadBatchResult()
        total = len(images)
        self._apply(fsm.start_upload(self._snapshot, total))

        for index, item in enumerate(images):
            mime_type = await asyncio.to_thread(item.resolve_mime_type)
            self._ensure_current(token)
            if mime_type not in ALLOWED_MIME_TYPES:
                reason = f'Invalid file type: "{mime_type}". Allowed types: {", ".join(sorted(ALLOWED_MIME_TYPES))}'
                logger.warning("Skipping %s: %s", item.display_name, reason)
                result.failed.append(UploadFailure(index=index, name=item.display_name, reason=reason))
            else:
                try:
                    url = await self._backend.upload_asset(item, mime_type)
                except WardrobeRequestError as exc:
                    logger.warning("Upload of %s failed: %s", item.display_name, exc)
                    result.failed.append(UploadFailure(index=index, name=item.display_name, reason=str(exc)))
                else:
                    result.uploaded.append(UploadedAsset(index=index, url=url))
                self._ensure_current(token)
            self._apply(fsm.record_upload(self._snapshot, index + 1, total, result.failed))

        logger.info("Uploaded %d of %d images.", len(result.uploaded), result.attempted)
        return result

    async def _classify(self, urls: list[str], token: int) -> None:
        self._apply(fsm.start_analysis(self._snapshot, len(urls)))
        try:
            outcome = await self._backend.classify_auto(self._user_id, urls)
        except WardrobeRequestError as exc:
            self._ensure_current(token)
            logger.error("Automatic classification failed: %s", exc)
            raise ClassificationError(f"Failed to classify items: {exc}") from exc
        self._ensure_current(token)

        unknown = sorted(set(outcome.rejected_urls) - set(urls))
        if unknown:
            raise ClassificationError(f"Classifier rejected images that were not submitted: {', '.join(unknown)}")

        self._submitted = len(urls)
        self._apply(fsm.resolve_classification(self._snapshot, outcome, len(urls)))
        if self._snapshot.awaiting_manual:
            logger.info("%s %s a manual category.", plural(len(outcome.rejected), "image"), needs(len(outcome.rejected)))

    def _validate_assignments(self, assignments: list[ManualAssignment]) -> None:
        pending = self._snapshot.pending_urls
        urls = [assignment.url for assignment in assignments]
        duplicates = sorted({url for url in urls if urls.count(url) > 1})
        if duplicates:
            raise InputError(f"duplicate category for {', '.join(duplicates)}")
        unknown = sorted(set(urls) - set(pending))
        if unknown:
            raise InputError(f"images are not waiting for a category: {', '.join(unknown)}")
        missing = [url for url in pending if url not in urls]
        if missing:
            raise InputError(f"{plural(len(missing), 'image')} still {needs(len(missing))} a category")

    def _ensure_current(self, token: int) -> None:
        if token != self._generation:
            raise _RunAbandoned()

    def _abort(self, error: Exception, token: int) -> None:
        if token != self._generation:
            logger.warning("Abandoned upload run raised %r after reset.", error)
            return
        logger.exception("Unexpected error during upload run")
        self._fail(error)

    def _fail(self, error: Exception) -> None:
        if self._snapshot.is_terminal:
            return
        logger.error("Upload run failed: %s", error)
        self._apply(fsm.fail(self._snapshot, error))

    def _apply(self, snapshot: PipelineSnapshot) -> None:
        event = PipelineEvent(previous=self._snapshot.state, snapshot=snapshot)
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Pipeline listener %r raised", listener)
