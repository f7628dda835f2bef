"""
Batched processing helpers.

BatchProcessor commits every ``batch_size`` documents so large imports,
updates and exports run with bounded memory.

Example:
    >>> processor = BatchProcessor(manager, batch_size=500)
    >>> imported = await processor.import_data(
    ...     Article, rows, lambda row: Article(title=row["title"], category=row["cat"])
    ... )
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from ..manager import DocumentManager
    from ..repository import DocumentRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], Any]


async def resolve(value: Any) -> Any:
    """Await value if it is awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class BatchProcessor:
    """Process, import and export documents in committed batches.

    Callbacks (processor, factory, exporter, progress) may be plain
    functions or coroutine functions. Progress callbacks receive
    ``(processed, total)``; total is None when unknown.
    """

    def __init__(self, manager: DocumentManager, batch_size: Optional[int] = None) -> None:
        self.manager = manager
        self.batch_size = batch_size or manager.config.batch_size

    async def process_items(
        self,
        items: Iterable[Any],
        processor: Callable[[Any], Any],
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Persist the document processor returns for each item.

        Items for which processor returns None are skipped. The manager is
        committed and cleared after every batch.

        Returns:
            Number of documents persisted
        """
        size = batch_size or self.batch_size
        processed = 0
        pending = 0
        for item in items:
            document = await resolve(processor(item))
            if document is None:
                continue
            await self.manager.persist(document)
            processed += 1
            pending += 1
            if pending >= size:
                await self._flush(clear=True)
                pending = 0
                await self._notify(progress, processed, None)

        if pending:
            await self._flush(clear=True)
            await self._notify(progress, processed, None)
        return processed

    async def process_query(
        self,
        repository: DocumentRepository,
        criteria: Optional[Mapping[str, Any]],
        processor: Callable[[Any], Any],
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Stream matching documents and save those processor modified.

        processor receives each document and returns a truthy value when it
        changed the document.

        Returns:
            Number of documents saved
        """
        size = batch_size or self.batch_size
        state = {"modified": 0, "pending": 0, "seen": 0}

        async def visit(document: Any) -> None:
            state["seen"] += 1
            if await resolve(processor(document)):
                await self.manager.persist(document)
                state["modified"] += 1
                state["pending"] += 1
                if state["pending"] >= size:
                    await self._flush(clear=False)
                    state["pending"] = 0
            await self._notify(progress, state["seen"], None)

        await repository.stream(visit, criteria, size)
        if state["pending"]:
            await self._flush(clear=False)
        return state["modified"]

    async def import_data(
        self,
        document_class: type,
        rows: Sequence[Any],
        factory: Callable[[Any], Any],
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Create and persist one document per row.

        Raises:
            TypeError: If factory returns an instance of another class
        """
        size = batch_size or self.batch_size
        total = len(rows)
        imported = 0
        for start in range(0, total, size):
            for row in rows[start : start + size]:
                document = await resolve(factory(row))
                if document is None:
                    continue
                if not isinstance(document, document_class):
                    raise TypeError(
                        f"Factory returned {type(document).__name__}, "
                        f"expected {document_class.__name__}"
                    )
                await self.manager.persist(document)
                imported += 1
            await self._flush(clear=True)
            await self._notify(progress, imported, total)

        logger.info(
            "Import finished",
            extra={"type": document_class.__name__, "imported": imported, "rows": total},
        )
        return imported

    async def export_data(
        self,
        repository: DocumentRepository,
        exporter: Callable[[Any], Any],
        criteria: Optional[Mapping[str, Any]] = None,
        batch_size: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> list[Any]:
        """Collect exporter(document) for every matching document.

        None results are dropped.
        """
        exported: list[Any] = []
        state = {"seen": 0}

        async def visit(document: Any) -> None:
            item = await resolve(exporter(document))
            if item is not None:
                exported.append(item)
            state["seen"] += 1
            await self._notify(progress, state["seen"], None)

        await repository.stream(visit, criteria, batch_size or self.batch_size)
        return exported

    async def _flush(self, clear: bool) -> None:
        await self.manager.commit()
        if clear:
            self.manager.clear()

    @staticmethod
    async def _notify(
        progress: Optional[ProgressCallback], processed: int, total: Optional[int]
    ) -> None:
        if progress is not None:
            await resolve(progress(processed, total))
