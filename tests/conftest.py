"""Shared test fixtures for faultkb."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from faultkb.knowledge.models import FaultRecord
from faultkb.storage.db import get_connection
from faultkb.storage.repository import Repository


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db_conn(db_path: Path) -> sqlite3.Connection:
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def repo(db_conn: sqlite3.Connection) -> Repository:
    return Repository(db_conn)


@pytest.fixture
def user_id(repo: Repository) -> int:
    return repo.create_account("tech@hospital.example", tier="free")


@pytest.fixture
def admin_id(repo: Repository) -> int:
    return repo.create_account("admin@faultkb.example", role="admin")


@pytest.fixture
def sample_fault() -> FaultRecord:
    return FaultRecord(
        device_type="Ventilator",
        manufacturer="Acme",
        device_model="V200",
        fault_description="pump leaking fluid from valve",
        symptoms="puddle under unit",
        error_codes="E12",
        root_cause="Cracked valve seat",
        solution="Replace the valve seat and pressure-test the circuit",
        parts_required=["P-100", "P-200"],
        estimated_repair_time="2 hours",
        difficulty="medium",
    )


@pytest.fixture
def populated_repo(repo: Repository, sample_fault: FaultRecord) -> Repository:
    """Repository with a handful of faults of varying popularity."""
    repo.save_fault(sample_fault)
    repo.save_fault(
        FaultRecord(
            device_type="Infusion Pump",
            manufacturer="Medix",
            device_model="IP-9",
            fault_description="pump alarm keeps sounding",
            solution="Recalibrate the occlusion sensor",
            views=10,
        )
    )
    repo.save_fault(
        FaultRecord(
            device_type="Dialysis",
            manufacturer="Renal",
            device_model="D1",
            fault_description="fluid warmer not heating",
            solution="Check the heater relay",
            views=3,
        )
    )
    repo.save_fault(
        FaultRecord(
            device_type="Monitor",
            manufacturer="Vita",
            device_model="M5",
            fault_description="screen flickers",
            solution="Reseat the display cable",
            views=50,
        )
    )
    return repo


def _tool_response(payload: dict) -> MagicMock:
    """A Messages API response whose only block is a record_diagnosis tool call."""
    block = MagicMock()
    block.type = "tool_use"
    block.name = "record_diagnosis"
    block.input = payload
    response = MagicMock()
    response.content = [block]
    return response


@pytest.fixture
def tool_response():
    return _tool_response


@pytest.fixture
def diagnosis_payload() -> dict:
    return {
        "rootCause": "Worn inspiratory valve diaphragm",
        "solution": "Replace the diaphragm and run the leak test",
        "partsRequired": ["P-445"],
        "estimatedRepairTime": "1.5 hours",
        "difficulty": "medium",
        "references": ["Service manual section 4.2"],
    }


@pytest.fixture
def anthropic_client(diagnosis_payload: dict) -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = _tool_response(diagnosis_payload)
    return client
