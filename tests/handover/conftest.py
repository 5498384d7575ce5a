"""Fixtures for handover tests."""

from typing import Callable

import pytest

from handover_fakes import HandoverEnv


@pytest.fixture
def env() -> HandoverEnv:
    return HandoverEnv()


@pytest.fixture
def env_factory() -> Callable[..., HandoverEnv]:
    return HandoverEnv
