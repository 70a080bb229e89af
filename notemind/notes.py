"""Notes directory: markdown files with YAML frontmatter, plus the title-generation queue."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from pathlib import Path

import frontmatter

from notemind.errors import GenerationError
from notemind.models import Note, now_ms
from notemind.providers.base import ProviderError

logger = logging.getLogger(__name__)

TITLE_MIN_CONTENT_LENGTH = 70


def slugify(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


class NoteStore:
    """Notes kept as `<slug>-<id8>.md` files; id, title and created_at live in frontmatter.

    Files without frontmatter are accepted: the stem becomes the id and the
    modification time the creation time.
    """

    def __init__(self, notes_dir: Path) -> None:
        self._dir = notes_dir
        self._notes: dict[str, Note] = {}

    @property
    def notes_dir(self) -> Path:
        return self._dir

    def load(self) -> list[Note]:
        self._dir.mkdir(parents=True, exist_ok=True)
        self._notes.clear()
        for path in sorted(self._dir.glob("*.md")):
            post = frontmatter.load(str(path))
            note_id = str(post.metadata.get("id") or path.stem)
            created_at = post.metadata.get("created_at")
            self._notes[note_id] = Note(
                title=str(post.metadata.get("title") or ""),
                content=post.content.strip(),
                id=note_id,
                created_at=int(created_at) if created_at else int(path.stat().st_mtime * 1000),
                path=path,
            )
        logger.debug("Loaded %d notes from %s", len(self._notes), self._dir)
        return self.all()

    def all(self) -> list[Note]:
        """Newest first."""
        return sorted(self._notes.values(), key=lambda n: n.created_at, reverse=True)

    def get(self, note_id: str) -> Note | None:
        return self._notes.get(note_id)

    def create(self, title: str, content: str) -> Note:
        note = Note(title=title.strip(), content=content, created_at=now_ms())
        stem = slugify(note.title) or "note"
        note.path = self._dir / f"{stem}-{note.id[:8]}.md"
        self._write(note)
        self._notes[note.id] = note
        logger.info("Created note %s (%s)", note.id, note.title or "untitled")
        return note

    def update(self, note_id: str, *, title: str | None = None, content: str | None = None) -> Note:
        """Rewrite a note in place. The file name is kept so links stay valid.

        Raises:
            KeyError: If the note is unknown.
        """
        note = self._notes[note_id]
        if title is not None:
            note.title = title.strip()
        if content is not None:
            note.content = content
        self._write(note)
        return note

    def _write(self, note: Note) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        if note.path is None:
            note.path = self._dir / f"{note.id}.md"
        post = frontmatter.Post(note.content, id=note.id, title=note.title, created_at=note.created_at)
        note.path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")


class TitleGenerationQueue:
    """Background title generation for untitled notes.

    Work is keyed by note id: a note that is pending or in flight is never
    queued again. Every schedule() call drains the pending map into tasks.
    """

    def __init__(
        self,
        store: NoteStore,
        generate_title: Callable[[Note], Awaitable[str]],
        min_content_length: int = TITLE_MIN_CONTENT_LENGTH,
    ) -> None:
        self._store = store
        self._generate_title = generate_title
        self._min_content_length = min_content_length
        self._pending: dict[str, Note] = {}
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> set[str]:
        return set(self._pending)

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    def needs_title(self, note: Note) -> bool:
        return not note.title.strip() and len(note.content.strip()) > self._min_content_length

    def schedule(self, note: Note) -> bool:
        """Queue a note for titling. Returns False when it was not queued."""
        if not self.needs_title(note) or note.id in self._pending or note.id in self._in_flight:
            return False
        self._pending[note.id] = note
        self._drain()
        return True

    def _drain(self) -> None:
        while self._pending:
            note_id, note = self._pending.popitem()
            self._in_flight.add(note_id)
            task = asyncio.create_task(self._run(note))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, note: Note) -> None:
        try:
            title = await self._generate_title(note)
            current = self._store.get(note.id)
            # The user may have titled the note while the request was running.
            if title and current is not None and not current.title:
                self._store.update(note.id, title=title)
                logger.info("Titled note %s: %s", note.id, title)
        except (ProviderError, GenerationError) as exc:
            logger.error("Title generation failed for note %s: %s", note.id, exc)
        finally:
            self._in_flight.discard(note.id)

    async def join(self) -> None:
        """Wait until all scheduled work has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
