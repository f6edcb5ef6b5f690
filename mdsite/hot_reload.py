import asyncio
import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer


class ChangeKind(Enum):
    Added = auto()
    Changed = auto()
    Removed = auto()


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    path: str


@dataclass(frozen=True)
class WatchTarget:
    directory: str
    recursive: bool


def translate_event(event: FileSystemEvent) -> list[ChangeEvent]:
    if event.is_directory:
        return []
    src_path = os.path.abspath(os.fsdecode(event.src_path))
    if event.event_type == "created":
        return [ChangeEvent(ChangeKind.Added, src_path)]
    if event.event_type == "modified":
        return [ChangeEvent(ChangeKind.Changed, src_path)]
    if event.event_type == "deleted":
        return [ChangeEvent(ChangeKind.Removed, src_path)]
    if event.event_type == "moved":
        dest_path = os.path.abspath(os.fsdecode(event.dest_path))
        return [ChangeEvent(ChangeKind.Removed, src_path), ChangeEvent(ChangeKind.Added, dest_path)]
    # opened/closed and friends
    return []


class EventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread into an asyncio queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        for change in translate_event(event):
            self.loop.call_soon_threadsafe(self.queue.put_nowait, change)


async def watch_paths(targets: list[WatchTarget]) -> AsyncIterator[ChangeEvent]:
    """Yield changes below `targets` until the consumer stops iterating."""
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
    event_handler = EventHandler(asyncio.get_running_loop(), queue)
    observer = Observer()
    for target in targets:
        observer.schedule(event_handler, target.directory, recursive=target.recursive)
    observer.start()
    try:
        while True:
            yield await queue.get()
    finally:
        observer.stop()
        observer.join()


class TestTranslateEvent:
    def test_kinds(self, tmp_path):
        path = str(tmp_path / "a.md")
        assert translate_event(FileCreatedEvent(path)) == [ChangeEvent(ChangeKind.Added, path)]
        assert translate_event(FileModifiedEvent(path)) == [ChangeEvent(ChangeKind.Changed, path)]
        assert translate_event(FileDeletedEvent(path)) == [ChangeEvent(ChangeKind.Removed, path)]

    def test_move_is_remove_then_add(self, tmp_path):
        src = str(tmp_path / "a.md")
        dest = str(tmp_path / "b.md")
        assert translate_event(FileMovedEvent(src, dest)) == [
            ChangeEvent(ChangeKind.Removed, src),
            ChangeEvent(ChangeKind.Added, dest),
        ]

    def test_directories_are_dropped(self, tmp_path):
        path = str(tmp_path / "sub")
        for event in [DirCreatedEvent(path), DirModifiedEvent(path), DirDeletedEvent(path), DirMovedEvent(path, path + "2")]:
            assert translate_event(event) == []

    def test_handler_forwards_to_queue(self, tmp_path):
        async def run() -> ChangeEvent:
            queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
            handler = EventHandler(asyncio.get_running_loop(), queue)
            handler.on_any_event(FileModifiedEvent(str(tmp_path / "x.md")))
            return await asyncio.wait_for(queue.get(), timeout=1)

        assert asyncio.run(run()) == ChangeEvent(ChangeKind.Changed, str(tmp_path / "x.md"))
