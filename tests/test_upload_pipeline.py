"""Tests for the batch upload pipeline."""

from __future__ import annotations

import struct
import zlib
from pathlib import Path

import pytest
import pytest_mock

from wardrobe.api.client import WardrobeRequestError
from wardrobe.upload.errors import (
    AllUploadsFailedError,
    AuthError,
    ClassificationError,
    InputError,
    ManualClassificationError,
)
from wardrobe.upload.models import (
    ClassificationOutcome,
    ManualAssignment,
    Phase,
    RejectedAsset,
    UploadItem,
)
from wardrobe.upload.pipeline import UploadPipeline
from wardrobe.upload.state_machine import PipelineEvent, PipelineState, baseline


def _items(*names: str) -> list[UploadItem]:
    return [UploadItem(uri=f"{name}.jpg", mime_type="image/jpeg") for name in names]


def _url_for(item: UploadItem, mime_type: str | None = None) -> str:
    return f"url{Path(item.uri).stem}"


@pytest.fixture
def backend(mocker: pytest_mock.MockerFixture):
    backend = mocker.Mock()
    backend.upload_asset = mocker.AsyncMock(side_effect=_url_for)
    backend.classify_auto = mocker.AsyncMock(
        side_effect=lambda user_id, urls: ClassificationOutcome(
            item_ids=tuple(range(1, len(urls) + 1)),
            accepted_count=len(urls),
        ),
    )
    backend.classify_manual = mocker.AsyncMock(return_value=None)
    backend.analyze_items = mocker.AsyncMock(return_value="Analysis started")
    return backend


@pytest.fixture
def identity(mocker: pytest_mock.MockerFixture):
    identity = mocker.Mock()
    identity.get_user_id = mocker.AsyncMock(return_value=42)
    return identity


@pytest.fixture
def pipeline(backend, identity) -> UploadPipeline:
    return UploadPipeline(backend, identity)


def _record(pipeline: UploadPipeline) -> list[PipelineEvent]:
    events: list[PipelineEvent] = []
    pipeline.subscribe(events.append)
    return events


def _chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))


def _huge_png(path: Path) -> Path:
    """Write a PNG whose header claims 30000x30000 pixels."""

    header = struct.pack(">IIBBBBB", 30000, 30000, 8, 2, 0, 0, 0)
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + _chunk(b"IHDR", header) + _chunk(b"IDAT", b"") + _chunk(b"IEND", b""))
    return path


@pytest.mark.asyncio
async def test_empty_batch_fails_before_any_request(pipeline: UploadPipeline, backend, identity) -> None:
    with pytest.raises(InputError, match="no images selected"):
        await pipeline.run([])

    identity.get_user_id.assert_not_awaited()
    backend.upload_asset.assert_not_awaited()


@pytest.mark.asyncio
async def test_oversized_batch_leaves_progress_untouched(pipeline: UploadPipeline, backend) -> None:
    events = _record(pipeline)

    with pytest.raises(InputError, match="batch too large"):
        await pipeline.run(_items(*"ABCDEFGHIJKL"))

    assert pipeline.snapshot == baseline()
    assert events == []
    backend.upload_asset.assert_not_awaited()


@pytest.mark.asyncio
async def test_full_acceptance_completes_without_manual_step(pipeline: UploadPipeline, backend) -> None:
    events = _record(pipeline)

    snapshot = await pipeline.run(_items("A", "B", "C"))

    assert snapshot.state is PipelineState.COMPLETE
    assert snapshot.progress.phase is Phase.COMPLETE
    assert snapshot.progress.current == snapshot.progress.total == 3
    assert snapshot.progress.message == "Successfully added 3 items!"
    assert snapshot.item_ids == (1, 2, 3)
    assert all(event.state is not PipelineState.PENDING_MANUAL for event in events)
    backend.classify_auto.assert_awaited_once_with(42, ["urlA", "urlB", "urlC"])

    upload_counts = [event.progress.current for event in events if event.state is PipelineState.UPLOADING]
    assert upload_counts == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_partial_rejection_waits_for_manual_categories(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(
        item_ids=(10, 11),
        accepted_count=2,
        rejected=(RejectedAsset(url="urlB", reason="category not found"),),
    )

    snapshot = await pipeline.run(_items("A", "B", "C"))

    assert snapshot.state is PipelineState.PENDING_MANUAL
    assert snapshot.awaiting_manual
    assert pipeline.pending_urls == ["urlB"]
    assert snapshot.progress.phase is Phase.ANALYZING
    assert snapshot.progress.message == "2 items added. 1 needs manual category selection"

    assignment = ManualAssignment(url="urlB", category_id=7)
    snapshot = await pipeline.submit_manual([assignment])

    backend.classify_manual.assert_awaited_once_with(42, [assignment])
    assert snapshot.state is PipelineState.COMPLETE
    assert snapshot.progress.current == snapshot.progress.total == 3
    assert snapshot.pending_urls == ()
    assert snapshot.item_ids == (10, 11)


@pytest.mark.asyncio
async def test_incomplete_assignments_are_never_submitted(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(
        accepted_count=1,
        rejected=(RejectedAsset(url="urlB"), RejectedAsset(url="urlC")),
    )
    await pipeline.run(_items("A", "B", "C"))

    with pytest.raises(InputError, match="1 image still needs a category"):
        await pipeline.submit_manual([ManualAssignment(url="urlB", category_id=3)])
    with pytest.raises(InputError, match="not waiting"):
        await pipeline.submit_manual(
            [
                ManualAssignment(url="urlB", category_id=3),
                ManualAssignment(url="urlC", category_id=3),
                ManualAssignment(url="urlZ", category_id=3),
            ],
        )
    with pytest.raises(InputError, match="duplicate"):
        await pipeline.submit_manual(
            [ManualAssignment(url="urlB", category_id=3), ManualAssignment(url="urlB", category_id=4)],
        )

    backend.classify_manual.assert_not_awaited()
    assert pipeline.state is PipelineState.PENDING_MANUAL
    assert pipeline.pending_urls == ["urlB", "urlC"]


@pytest.mark.asyncio
async def test_single_network_failure_fails_whole_run(pipeline: UploadPipeline, backend) -> None:
    backend.upload_asset.side_effect = WardrobeRequestError("connection reset")

    with pytest.raises(AllUploadsFailedError) as excinfo:
        await pipeline.run(_items("A"))

    assert pipeline.state is PipelineState.FAILED
    assert pipeline.progress.phase is Phase.FAILED
    assert "All images failed to upload" in pipeline.progress.message
    assert pipeline.snapshot.error == pipeline.progress.message
    assert excinfo.value.failures[0].reason == "connection reset"
    backend.classify_auto.assert_not_awaited()


@pytest.mark.asyncio
async def test_partial_upload_failure_continues_with_uploaded_subset(pipeline: UploadPipeline, backend) -> None:
    def _upload(item: UploadItem, mime_type: str | None = None) -> str:
        if item.uri.startswith("B"):
            raise WardrobeRequestError("Backend returned 500", status_code=500)
        return _url_for(item)

    backend.upload_asset.side_effect = _upload
    items = _items("A", "B") + [UploadItem(uri="C.gif", mime_type="image/gif")]

    snapshot = await pipeline.run(items)

    assert snapshot.state is PipelineState.COMPLETE
    assert [failure.name for failure in snapshot.failures] == ["B.jpg", "C.gif"]
    assert "Invalid file type" in snapshot.failures[1].reason
    assert backend.upload_asset.await_count == 2
    backend.classify_auto.assert_awaited_once_with(42, ["urlA"])


@pytest.mark.asyncio
async def test_missing_identity_blocks_network(pipeline: UploadPipeline, backend, identity) -> None:
    identity.get_user_id.return_value = None

    with pytest.raises(AuthError):
        await pipeline.run(_items("A"))

    assert pipeline.state is PipelineState.FAILED
    backend.upload_asset.assert_not_awaited()


@pytest.mark.asyncio
async def test_classification_transport_error_fails_run(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = WardrobeRequestError("Backend returned 500", status_code=500)

    with pytest.raises(ClassificationError):
        await pipeline.run(_items("A", "B"))

    assert pipeline.state is PipelineState.FAILED
    assert pipeline.progress.phase is Phase.FAILED


@pytest.mark.asyncio
async def test_rejected_urls_must_come_from_submission(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(rejected=(RejectedAsset(url="urlX"),))

    with pytest.raises(ClassificationError, match="urlX"):
        await pipeline.run(_items("A"))

    assert pipeline.state is PipelineState.FAILED
    assert pipeline.pending_urls == []


@pytest.mark.asyncio
async def test_manual_failure_is_terminal_without_retry(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(rejected=(RejectedAsset(url="urlA"),))
    backend.classify_manual.side_effect = WardrobeRequestError("Backend returned 400", status_code=400)
    await pipeline.run(_items("A"))

    with pytest.raises(ManualClassificationError):
        await pipeline.submit_manual([ManualAssignment(url="urlA", category_id=1)])

    backend.classify_manual.assert_awaited_once()
    assert pipeline.state is PipelineState.FAILED
    with pytest.raises(InputError):
        await pipeline.submit_manual([ManualAssignment(url="urlA", category_id=1)])


@pytest.mark.asyncio
async def test_reset_is_idempotent(pipeline: UploadPipeline) -> None:
    await pipeline.run(_items("A"))
    events = _record(pipeline)

    pipeline.reset()
    after_first = pipeline.snapshot
    pipeline.reset()

    assert pipeline.snapshot == after_first == baseline()
    assert len(events) == 1
    assert events[0].previous is PipelineState.COMPLETE


@pytest.mark.asyncio
async def test_reset_mid_upload_discards_late_results(pipeline: UploadPipeline, backend) -> None:
    def _upload_then_reset(item: UploadItem, mime_type: str | None = None) -> str:
        pipeline.reset()
        return _url_for(item)

    backend.upload_asset.side_effect = _upload_then_reset
    events = _record(pipeline)

    snapshot = await pipeline.run(_items("A", "B"))

    assert snapshot == baseline()
    assert backend.upload_asset.await_count == 1
    backend.classify_auto.assert_not_awaited()
    assert events[-1].state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_new_run_starts_fresh_after_failure(pipeline: UploadPipeline, backend) -> None:
    backend.upload_asset.side_effect = WardrobeRequestError("offline")
    with pytest.raises(AllUploadsFailedError):
        await pipeline.run(_items("A"))

    backend.upload_asset.side_effect = _url_for
    snapshot = await pipeline.run(_items("A"))

    assert snapshot.state is PipelineState.COMPLETE
    assert snapshot.error is None
    assert snapshot.failures == ()


@pytest.mark.asyncio
async def test_analyze_requires_completed_run(pipeline: UploadPipeline, backend) -> None:
    with pytest.raises(InputError):
        await pipeline.analyze()

    await pipeline.run(_items("A", "B"))
    message = await pipeline.analyze()

    assert message == "Analysis started"
    backend.analyze_items.assert_awaited_once_with([1, 2])


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_run(pipeline: UploadPipeline, mocker: pytest_mock.MockerFixture) -> None:
    broken = mocker.Mock(side_effect=RuntimeError("boom"))
    unsubscribe = pipeline.subscribe(broken)

    snapshot = await pipeline.run(_items("A"))
    unsubscribe()
    pipeline.reset()

    assert snapshot.state is PipelineState.COMPLETE
    assert broken.call_count == 4


def test_batch_limit_cannot_be_raised(backend, identity) -> None:
    with pytest.raises(ValueError, match="between 1 and 10"):
        UploadPipeline(backend, identity, max_batch_size=20)
    with pytest.raises(ValueError):
        UploadPipeline(backend, identity, max_batch_size=0)


@pytest.mark.asyncio
async def test_lower_batch_limit_is_enforced(backend, identity) -> None:
    pipeline = UploadPipeline(backend, identity, max_batch_size=5)

    with pytest.raises(InputError, match="batch too large"):
        await pipeline.run(_items(*"ABCDEF"))

    backend.upload_asset.assert_not_awaited()


@pytest.mark.asyncio
async def test_decompression_bomb_is_rejected_locally(pipeline: UploadPipeline, backend, tmp_path: Path) -> None:
    huge = _huge_png(tmp_path / "huge.png")

    snapshot = await pipeline.run([UploadItem(uri=str(huge)), UploadItem(uri="A.jpg", mime_type="image/jpeg")])

    assert snapshot.state is PipelineState.COMPLETE
    assert [failure.index for failure in snapshot.failures] == [0]
    assert snapshot.failures[0].name == "huge.png"
    backend.upload_asset.assert_awaited_once()
    backend.classify_auto.assert_awaited_once_with(42, ["urlA"])


@pytest.mark.asyncio
async def test_unexpected_error_fails_run(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await pipeline.run(_items("A"))

    assert pipeline.state is PipelineState.FAILED
    assert pipeline.snapshot.error == "boom"
    assert pipeline.progress.phase is Phase.FAILED


@pytest.mark.asyncio
async def test_unexpected_error_during_manual_step_fails_run(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(rejected=(RejectedAsset(url="urlA"),))
    backend.classify_manual.side_effect = KeyError("categoryId")
    await pipeline.run(_items("A"))

    with pytest.raises(KeyError):
        await pipeline.submit_manual([ManualAssignment(url="urlA", category_id=1)])

    assert pipeline.state is PipelineState.FAILED


@pytest.mark.asyncio
async def test_reset_during_auto_classification_discards_outcome(pipeline: UploadPipeline, backend) -> None:
    def _classify_then_reset(user_id: int, urls: list[str]) -> ClassificationOutcome:
        pipeline.reset()
        return ClassificationOutcome(rejected=(RejectedAsset(url="urlA"),))

    backend.classify_auto.side_effect = _classify_then_reset
    events = _record(pipeline)

    snapshot = await pipeline.run(_items("A"))

    assert snapshot == baseline()
    assert events[-1].state is PipelineState.IDLE
    assert pipeline.pending_urls == []


@pytest.mark.asyncio
async def test_reset_during_auto_classification_ignores_late_error(pipeline: UploadPipeline, backend) -> None:
    def _reset_then_raise(user_id: int, urls: list[str]) -> ClassificationOutcome:
        pipeline.reset()
        raise WardrobeRequestError("timed out")

    backend.classify_auto.side_effect = _reset_then_raise

    snapshot = await pipeline.run(_items("A"))

    assert snapshot == baseline()


@pytest.mark.asyncio
async def test_reset_during_manual_classification_discards_result(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(rejected=(RejectedAsset(url="urlA"),))
    backend.classify_manual.side_effect = lambda user_id, assignments: pipeline.reset()
    await pipeline.run(_items("A"))
    events = _record(pipeline)

    snapshot = await pipeline.submit_manual([ManualAssignment(url="urlA", category_id=2)])

    assert snapshot == baseline()
    assert [event.state for event in events] == [PipelineState.ANALYZING, PipelineState.IDLE]


@pytest.mark.asyncio
async def test_submit_after_reset_sends_nothing(pipeline: UploadPipeline, backend) -> None:
    backend.classify_auto.side_effect = None
    backend.classify_auto.return_value = ClassificationOutcome(rejected=(RejectedAsset(url="urlA"),))
    await pipeline.run(_items("A"))
    pipeline.reset()

    with pytest.raises(InputError, match="no items are waiting"):
        await pipeline.submit_manual([ManualAssignment(url="urlA", category_id=2)])

    backend.classify_manual.assert_not_awaited()
    assert pipeline.snapshot == baseline()
