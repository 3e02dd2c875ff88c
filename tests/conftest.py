import pytest

from workflow_agent.checkpoint import CheckpointLog
from workflow_agent.store import Store
from workflow_agent.tools import ToolContext, build_registry


@pytest.fixture
def store(tmp_path):
    return Store(f"sqlite:///{tmp_path / 'workflow_agent.db'}")


@pytest.fixture
def checkpoints(store):
    return CheckpointLog(store)


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def ctx(store, checkpoints):
    session_id = checkpoints.begin(None, "test session", origin="test")
    return ToolContext(store, checkpoints, session_id)


@pytest.fixture
def loan_case(store):
    return store.insert_case("Home Loan", "Loan intake workflow", {"stages": []})
