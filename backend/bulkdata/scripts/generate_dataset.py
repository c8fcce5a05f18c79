"""
Dataset Generator
=================

Builds a synthetic backing dataset (``database.r{N}.db``) for development
and tests. Every run with the same arguments produces the same rows.

Usage:
    python -m bulkdata.scripts.generate_dataset --patients 100 --stu 4
"""

from __future__ import annotations

import argparse
import json
import random
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Column, Index, MetaData, Table, Text, create_engine, insert

from bulkdata.core.config import settings


metadata = MetaData()

data = Table(
    "data",
    metadata,
    Column("resource_json", Text, nullable=False),
    Column("fhir_type", Text, nullable=False),
    Column("patient_id", Text),
    Column("group_id", Text),
    Column("modified_date", Text),
    Index("ix_data_fhir_type", "fhir_type"),
    Index("ix_data_patient_id", "patient_id"),
)

GROUPS = ("BlueCrossBlueShield", "Medicare")

MARITAL_STATUSES = ("Married", "Never Married", "Divorced")

START_DATE = datetime(2020, 1, 1)


def _uuid(rng: random.Random) -> str:
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))


def _row(resource: Dict[str, Any], patient_id: Optional[str], group_id: Optional[str], modified: datetime) -> Dict[str, Any]:
    return {
        "resource_json": json.dumps(resource, separators=(",", ":")),
        "fhir_type": resource["resourceType"],
        "patient_id": patient_id,
        "group_id": group_id,
        "modified_date": modified.strftime("%Y-%m-%d %H:%M:%S"),
    }


def generate_rows(
    patients: int = 100,
    observations_per_patient: int = 2,
    seed: int = 1,
) -> Iterator[Dict[str, Any]]:
    """
    Yield dataset rows: ``patients`` Patients with one Encounter and
    ``observations_per_patient`` Observations each, a DocumentReference for
    every tenth patient, plus a few system level Practitioners and Groups.

    Patient ``i`` is in group ``GROUPS[i % 2]`` and its marital status is
    ``MARITAL_STATUSES[i % 3]``. The modification date of a patient's rows
    is ``i`` days after 2020-01-01.
    """
    rng = random.Random(seed)

    for i in range(patients):
        patient_id = _uuid(rng)
        group_id = GROUPS[i % 2]
        modified = START_DATE + timedelta(days=i)
        subject = {"reference": f"Patient/{patient_id}"}

        yield _row(
            {
                "resourceType": "Patient",
                "id": patient_id,
                "gender": "female" if i % 2 else "male",
                "birthDate": f"{1940 + i % 60}-0{1 + i % 9}-1{i % 10}",
                "maritalStatus": {"text": MARITAL_STATUSES[i % 3]},
                "name": [{"family": f"Family{i}", "given": [f"Given{i}"]}],
            },
            patient_id,
            group_id,
            modified,
        )

        yield _row(
            {
                "resourceType": "Encounter",
                "id": _uuid(rng),
                "status": "finished",
                "class": {"code": "AMB"},
                "subject": subject,
            },
            patient_id,
            group_id,
            modified,
        )

        for j in range(observations_per_patient):
            yield _row(
                {
                    "resourceType": "Observation",
                    "id": _uuid(rng),
                    "status": "final",
                    "code": {"text": "Body Weight" if j % 2 else "Body Height"},
                    "subject": subject,
                    "valueQuantity": {"value": 50 + (i + j) % 50, "unit": "kg" if j % 2 else "cm"},
                },
                patient_id,
                group_id,
                modified,
            )

        if i % 10 == 0:
            yield _row(
                {
                    "resourceType": "DocumentReference",
                    "id": _uuid(rng),
                    "status": "current",
                    "subject": subject,
                    "content": [
                        {"attachment": {"contentType": "text/plain", "url": f"/attachments/note-{i}.txt"}}
                    ],
                },
                patient_id,
                group_id,
                modified,
            )

    for i in range(5):
        yield _row(
            {
                "resourceType": "Practitioner",
                "id": _uuid(rng),
                "name": [{"family": f"Doctor{i}"}],
            },
            None,
            None,
            START_DATE,
        )

    for group_id in GROUPS:
        yield _row(
            {
                "resourceType": "Group",
                "id": _uuid(rng),
                "name": group_id,
                "type": "person",
                "actual": True,
            },
            None,
            group_id,
            START_DATE,
        )


def create_dataset(
    path: Path,
    patients: int = 100,
    observations_per_patient: int = 2,
    seed: int = 1,
) -> int:
    """(Re)create the dataset file at ``path``. Returns the number of rows."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        path.unlink()

    rows: List[Dict[str, Any]] = list(generate_rows(patients, observations_per_patient, seed))

    engine = create_engine(f"sqlite:///{path.as_posix()}")
    try:
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(insert(data), rows)
    finally:
        engine.dispose()
    return len(rows)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Generate a synthetic bulk data dataset")
    parser.add_argument("--stu", type=int, default=4, choices=(2, 3, 4), help="FHIR version")
    parser.add_argument("--patients", type=int, default=100, help="Number of patients")
    parser.add_argument("--observations", type=int, default=2, help="Observations per patient")
    parser.add_argument("--seed", type=int, default=1, help="Random seed for resource ids")
    parser.add_argument("--out", default=None, help="Output file (defaults to DATASET_DIR/database.r{stu}.db)")

    args = parser.parse_args(argv)
    path = Path(args.out) if args.out else settings.dataset_path(args.stu)

    count = create_dataset(path, args.patients, args.observations, args.seed)
    print(f"Wrote {count} rows to {path}")


if __name__ == "__main__":
    main()
