"""
Resource Stream
===============

Async paginator over the ``data`` table of a backing dataset.

The stream can pretend the dataset is ``multiplier`` times bigger than it
is. Once the physical rows are used up it starts over from the first row,
prefixing every resource id with ``o<N>-`` where ``N`` is the number of
completed passes, so that the virtual copies never share ids. The first
pass is never prefixed.

A stream is single use: iterate it once, or build a new one with the same
arguments to get the exact same records again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Sequence

from bulkdata.core.config import settings
from bulkdata.core.database import get_dataset_engine
from bulkdata.core.fhir_datetime import to_bool, uint
from bulkdata.middleware.prometheus import record_records_streamed
from bulkdata.services.query_builder import DEFAULT_COLUMNS, EXTENDED_COLUMNS, QueryBuilder
from bulkdata.services.type_filter import compile_filter


logger = logging.getLogger(__name__)

_HEX = "[a-fA-F0-9]"
RE_UID = re.compile(
    rf'"id":"({_HEX}{{8}}-{_HEX}{{4}}-{_HEX}{{4}}-{_HEX}{{4}}-{_HEX}{{12}})"'
)


def prefix_ids(raw_json: str, overflow: int) -> str:
    """Prefix every uuid ``"id"`` in a serialized row with ``o<overflow>-``."""
    if not overflow:
        return raw_json
    return RE_UID.sub(lambda m: f'"id":"o{overflow}-{m.group(1)}"', raw_json)


class ResourceStream:
    """
    Produces up to ``limit`` rows starting at logical ``offset``.

    Each produced row is a dict with the parsed resource under
    ``resource_json`` plus the ``fhir_type``, ``patient_id`` and
    ``group_id`` columns (and ``modified_date`` in extended mode).
    """

    def __init__(
        self,
        *,
        stu: int,
        types: Sequence[str],
        limit: Optional[int] = None,
        offset: int = 0,
        multiplier: int = 1,
        extended: bool = False,
        group: str = "",
        since: str = "",
        system_level: bool = False,
        patients: Optional[Sequence[str]] = None,
        filter_expression: Optional[str] = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        stratifier: str = "fhir_type",
        stratum: Optional[str] = None,
    ):
        self.stu = int(stu)
        self.limit = uint(limit, settings.DEFAULT_PAGE_SIZE) or settings.DEFAULT_PAGE_SIZE
        self.offset = uint(offset, 0)
        self.multiplier = uint(multiplier, 1)
        self.extended = to_bool(extended)

        if predicate is None and filter_expression:
            predicate = compile_filter(filter_expression)
        self.predicate = predicate

        self.builder = QueryBuilder(
            types=types,
            since=since,
            group=group,
            system_level=system_level,
            patients=patients,
            columns=EXTENDED_COLUMNS if self.extended else DEFAULT_COLUMNS,
            stratifier=stratifier,
            stratum=stratum,
        )

        self.total = 0
        self.page = 1
        self.count = 0
        self.row_index = 0
        self.overflow = 0
        self.cursor = 0
        self.cache: Deque[Dict[str, Any]] = deque()
        self._consumed = False

    @property
    def engine(self):
        return get_dataset_engine(self.stu)

    async def count_records(self) -> int:
        """Count the physical rows matching the filter (all types together)."""
        async with self.engine.connect() as conn:
            result = await conn.execute(self.builder.compile_count())
            self.total = sum(row.row_count for row in result)
        self.page = self.offset // self.limit + 1
        self.overflow = self.offset // self.total if self.total else 0
        return self.total

    async def fetch(self) -> int:
        """Load the next chunk of physical rows into the cache."""
        chunk = min(settings.ROWS_PER_CHUNK, self.limit)
        stmt = self.builder.compile(limit=chunk, offset=self.cursor)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            rows = result.mappings().all()
        self.cache.extend(dict(row) for row in rows)
        self.cursor += len(rows)
        return len(rows)

    async def _ensure_rows(self) -> bool:
        """
        Make sure the cache is not empty. Returns False once the logical end
        of the multiplied dataset is reached or no rows can be read.
        """
        if self.cache:
            return True

        index = self.offset + self.row_index
        if self.total == 0 or index >= self.total * self.multiplier:
            return False

        # Position the physical cursor for the logical index
        self.overflow, self.cursor = divmod(index, self.total)
        return await self.fetch() > 0

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        if self._consumed:
            raise RuntimeError("ResourceStream instances can only be iterated once")
        self._consumed = True

        await self.count_records()

        throttle = uint(settings.THROTTLE_MS, 0) / 1000

        while self.count < self.limit:
            if not await self._ensure_rows():
                break

            row = self.cache.popleft()
            raw = row["resource_json"]

            if self.predicate is not None and not self.predicate(json.loads(raw)):
                self.row_index += 1
                continue

            resource = json.loads(prefix_ids(raw, self.overflow))
            if self.extended:
                resource["__modified_date"] = row.get("modified_date")

            row["resource_json"] = resource

            if throttle:
                await asyncio.sleep(throttle)

            self.count += 1
            self.row_index += 1
            self.page = (self.offset + self.row_index) // self.limit + 1
            yield row

        record_records_streamed(self.count)

    async def count_all(self) -> int:
        """Consume the stream and return how many rows it produced."""
        count = 0
        async for _row in self:
            count += 1
        return count
