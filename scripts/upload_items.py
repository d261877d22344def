"""Upload local photos to the wardrobe and categorise what the classifier rejects."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Sequence

from wardrobe.api import WardrobeAPIClient, WardrobeRequestError
from wardrobe.api.schemas import Category
from wardrobe.config.settings import get_settings
from wardrobe.monitoring.logging import configure_logging
from wardrobe.session import SessionStore
from wardrobe.upload.errors import UploadPipelineError
from wardrobe.upload.models import ManualAssignment, UploadItem
from wardrobe.upload.pipeline import UploadPipeline
from wardrobe.upload.state_machine import PipelineEvent


def _print_event(event: PipelineEvent) -> None:
    progress = event.progress
    if not progress.message:
        return
    print(f"[{progress.phase.value} {progress.current}/{progress.total}] {progress.message}")


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


async def _choose(categories: Sequence[Category], prompt: str) -> Category:
    by_id = {category.id: category for category in categories}
    for category in categories:
        print(f"  {category.id}: {category.name}")
    while True:
        answer = await _ask(prompt)
        if answer.isdigit() and int(answer) in by_id:
            return by_id[int(answer)]
        print("Pick one of the listed ids.")


async def _collect_assignments(client: WardrobeAPIClient, urls: Sequence[str]) -> list[ManualAssignment]:
    roots = await client.list_root_categories()
    assignments: list[ManualAssignment] = []
    for url in urls:
        print(f"\nNo category detected for {url}")
        parent = await _choose(roots, "Category: ")
        children = await client.list_child_categories(parent.id)
        chosen = await _choose(children, "Type: ") if children else parent
        assignments.append(ManualAssignment(url=url, category_id=chosen.id))
    return assignments


async def upload(paths: Sequence[Path], analyze: bool) -> int:
    settings = get_settings()
    session = SessionStore(Path(settings.session_path))
    client = WardrobeAPIClient(settings, token_provider=session.get_access_token)
    pipeline = UploadPipeline(client, session, max_batch_size=settings.max_batch_size)
    pipeline.subscribe(_print_event)

    try:
        snapshot = await pipeline.run(UploadItem(uri=str(path)) for path in paths)
        for failure in snapshot.failures:
            print(f"Skipped {failure.name}: {failure.reason}")
        if snapshot.awaiting_manual:
            assignments = await _collect_assignments(client, snapshot.pending_urls)
            snapshot = await pipeline.submit_manual(assignments)
        if analyze and snapshot.item_ids:
            print(await pipeline.analyze())
    except (UploadPipelineError, WardrobeRequestError) as exc:
        print(f"Upload failed: {exc}")
        return 1
    finally:
        await client.close()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("images", nargs="+", type=Path, help="JPEG or PNG files to add")
    parser.add_argument("--analyze", action="store_true", help="request AI confidence for created items")
    parser.add_argument("--verbose", action="store_true", help="log HTTP traffic at DEBUG level")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else None)
    raise SystemExit(asyncio.run(upload(args.images, args.analyze)))


if __name__ == "__main__":
    main()
