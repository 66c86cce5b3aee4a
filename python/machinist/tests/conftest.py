"""Fixtures shared by the machinist test suite."""

from __future__ import annotations

import pytest

from machinist.tests.fakes import Cluster, FakeClock


@pytest.fixture
def cluster() -> Cluster:
    return Cluster()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
