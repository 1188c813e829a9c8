"""Shared fixtures for the calendar core tests."""
import json
import sys

import pytest
from PyQt5.QtCore import QCoreApplication

from data_manager import DataManager


@pytest.fixture(scope="session")
def qapp():
    """A Qt core application so QTimer and signals behave as in the app."""
    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    yield app


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "data" / "calendar_events.dat"


@pytest.fixture
def settings_path(tmp_path, data_file):
    path = tmp_path / "CalendarData.json"
    path.write_text(
        json.dumps({"settings": {"data_file": str(data_file), "check_interval_ms": 1000}}),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def manager(settings_path):
    return DataManager(str(settings_path))
