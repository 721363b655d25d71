"""Shared fixtures: a toy square property, a stub backend and a test app."""

import json
from typing import List

import pytest

from savethesquare import create_app
from savethesquare.config import TestingConfig
from savethesquare.core.errors import PersistenceWriteFailure
from savethesquare.core.geometry import load_boundary
from savethesquare.core.selection import DonatedCellRecord, DonationBatch, SelectionStore
from savethesquare.extensions import db

# 10 x 10 degrees with a 2 x 2 hole at (6..8, 6..8), toy scale
TOY_SQUARE = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"name": "Toy Square"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [
                    [[0, 0], [0, 10], [10, 10], [10, 0], [0, 0]],
                    [[6, 6], [8, 6], [8, 8], [6, 8], [6, 6]],
                ],
            },
        }
    ],
}

# 10 x 10 cells with a 3 x 3 cell hole, at real cell scale
TINY_SQUARE = {
    "type": "Polygon",
    "coordinates": [
        [[0, 0], [0.0001, 0], [0.0001, 0.0001], [0, 0.0001], [0, 0]],
        [[0.00003, 0.00003], [0.00006, 0.00003], [0.00006, 0.00006], [0.00003, 0.00006], [0.00003, 0.00003]],
    ],
}


class MemoryBackend:
    """In-memory persistence; ``fail_writes`` makes every write fail."""

    def __init__(self, records=None):
        self.records: List[DonatedCellRecord] = list(records or [])
        self.batches: List[DonationBatch] = []
        self.fail_writes = False

    def list_donations(self):
        return list(self.records)

    def create_donation(self, batch):
        if self.fail_writes:
            raise PersistenceWriteFailure("backend is down")
        self.batches.append(batch)
        saved = [
            DonatedCellRecord(
                key=r.key,
                donor_name=r.donor_name,
                donor_email=r.donor_email,
                timestamp=r.timestamp,
                provenance=r.provenance,
                greeting=r.greeting,
                donation_id=str(len(self.batches)),
            )
            for r in batch.records
        ]
        self.records.extend(saved)
        return saved


@pytest.fixture
def boundary():
    return load_boundary(TOY_SQUARE)


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(boundary, backend):
    return SelectionStore(boundary, backend, price_per_cell=20)


@pytest.fixture
def boundary_file(tmp_path):
    path = tmp_path / "toy_square.json"
    path.write_text(json.dumps(TOY_SQUARE), encoding="utf-8")
    return path


@pytest.fixture
def app(boundary_file):
    config = type(
        "ToySquareTestingConfig",
        (TestingConfig,),
        {"PROPERTY_BOUNDARY_PATH": str(boundary_file), "PROPERTY_NAME": "Toy Square"},
    )
    app = create_app(config)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tiny_boundary():
    return load_boundary(TINY_SQUARE, name="Tiny Square")


@pytest.fixture
def tiny_client(tmp_path):
    path = tmp_path / "tiny_square.json"
    path.write_text(json.dumps(TINY_SQUARE), encoding="utf-8")
    config = type(
        "TinySquareTestingConfig",
        (TestingConfig,),
        {"PROPERTY_BOUNDARY_PATH": str(path), "PROPERTY_NAME": "Tiny Square"},
    )
    app = create_app(config)
    yield app.test_client()
    with app.app_context():
        db.session.remove()
        db.drop_all()
