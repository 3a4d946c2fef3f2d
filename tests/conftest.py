import pytest

import stepflow.persistence as persistence
from stepflow.clock import FrozenClock
from stepflow.config import StepflowConfig
from stepflow.engine import StepEngine
from stepflow.persistence import InMemoryWorkflowRepository
from stepflow.templates import InMemoryTemplateStore, build_template

from helpers import (
    APPROVAL_TEMPLATE,
    LOOP_TEMPLATE,
    SINGLE_TEMPLATE,
    VERIFY_TEMPLATE,
)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return StepflowConfig()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def templates():
    return InMemoryTemplateStore(
        [
            build_template(SINGLE_TEMPLATE),
            build_template(LOOP_TEMPLATE),
            build_template(VERIFY_TEMPLATE),
            build_template(APPROVAL_TEMPLATE),
        ]
    )


@pytest.fixture
def engine(repo, templates, config, clock):
    return StepEngine(repo, templates, config, clock)


@pytest.fixture(autouse=True)
def _reset_repository_singleton():
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None
