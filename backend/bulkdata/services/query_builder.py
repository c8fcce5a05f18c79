"""
Query Builder
=============

Compiles the few filter dimensions of an export (resource types, ``_since``,
group, patient ids, system vs. patient level) into SQLAlchemy statements
against the ``data`` table of a backing dataset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import column, func, literal_column, select, table
from sqlalchemy.sql import Select
from sqlalchemy.sql.elements import ColumnElement

from bulkdata.core.fhir_datetime import fhir_datetime, uint


DATA_COLUMNS = ("resource_json", "fhir_type", "patient_id", "group_id", "modified_date")

data_table = table("data", *(column(name) for name in DATA_COLUMNS))

DEFAULT_COLUMNS = ("resource_json", "fhir_type", "patient_id", "group_id")
EXTENDED_COLUMNS = DEFAULT_COLUMNS + ("modified_date",)

# organizeOutputBy values and the column their files are stratified by
STRATIFIERS = {
    "": "fhir_type",
    "Patient": "patient_id",
    "Group": "group_id",
}


def make_list(value) -> List[str]:
    """Accept a comma separated string or a sequence and return clean strings."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return [str(item or "").strip() for item in items if str(item or "").strip()]


@dataclass
class QueryBuilder:
    """
    Builds the row selection and the grouped count statements for one
    export filter.

    Patient level exports (``system_level=False``) only see rows associated
    with a patient: either one of ``patients`` or, when that list is empty,
    any row with a non-null ``patient_id``.

    Counts are grouped by the ``stratifier`` column. Setting ``stratum``
    keeps only the rows whose stratifier column holds that value (an empty
    string stands for NULL).
    """

    types: Sequence[str] = field(default_factory=list)
    since: str = ""
    group: str = ""
    system_level: bool = False
    patients: Optional[Sequence[str]] = None
    columns: Sequence[str] = DEFAULT_COLUMNS
    limit: Optional[int] = None
    offset: Optional[int] = None
    stratifier: str = "fhir_type"
    stratum: Optional[str] = None

    def __post_init__(self) -> None:
        self.types = make_list(self.types)
        self.since = fhir_datetime(self.since) if self.since else ""
        self.group = str(self.group or "").strip()
        self.patients = make_list(self.patients)
        for name in self.columns:
            if name not in DATA_COLUMNS:
                raise ValueError(f'Unknown column "{name}"')
        if self.stratifier not in STRATIFIERS.values():
            raise ValueError(f'Unknown stratifier "{self.stratifier}"')

    def where_clauses(self) -> List[ColumnElement[bool]]:
        c = data_table.c
        clauses: List[ColumnElement[bool]] = []

        if self.types:
            clauses.append(c.fhir_type.in_(self.types))

        if self.since:
            clauses.append(func.datetime(c.modified_date) >= func.datetime(self.since))

        if self.group:
            clauses.append(c.group_id == self.group)

        if not self.system_level:
            if self.patients:
                clauses.append(c.patient_id.in_(self.patients))
            else:
                clauses.append(c.patient_id.is_not(None))

        if self.stratum is not None:
            stratifier = c[self.stratifier]
            clauses.append(stratifier.is_(None) if self.stratum == "" else stratifier == self.stratum)

        return clauses

    def compile(self, limit: Optional[int] = None, offset: Optional[int] = None) -> Select:
        """
        Row selection. ``limit``/``offset`` override the ones given to the
        builder; rows come out in physical (rowid) order so that the same
        offset always addresses the same row.
        """
        stmt = select(*(data_table.c[name] for name in self.columns)).select_from(data_table)
        clauses = self.where_clauses()
        if clauses:
            stmt = stmt.where(*clauses)
        stmt = stmt.order_by(literal_column("rowid"))

        limit = self.limit if limit is None else limit
        offset = self.offset if offset is None else offset

        if limit:
            stmt = stmt.limit(uint(limit))
            if offset is not None:
                stmt = stmt.offset(uint(offset))

        return stmt

    def compile_count(self, count_alias: str = "row_count") -> Select:
        """Same filter, counted per stratifier value (resource type by default)."""
        stratifier = data_table.c[self.stratifier]
        stmt = select(stratifier, func.count().label(count_alias)).select_from(data_table)
        clauses = self.where_clauses()
        if clauses:
            stmt = stmt.where(*clauses)
        return stmt.group_by(stratifier).order_by(stratifier)
