"""
Tests for tasks/task_lock: the Valkey lock that keeps the job reconciler
from overlapping with itself.
"""

import pytest
from unittest.mock import MagicMock

from intelhub.tasks.task_lock import (
    DEFAULT_LOCK_TIMEOUT_S,
    acquire_task_lock,
    with_task_lock,
)


@pytest.fixture()
def lock():
    held = MagicMock()
    held.acquire.return_value = True
    return held


@pytest.fixture()
def valkey_client(lock):
    client = MagicMock()
    client.lock.return_value = lock
    return client


@pytest.fixture(autouse=True)
def patch_valkey(monkeypatch, valkey_client):
    monkeypatch.setattr(
        "intelhub.tasks.task_lock.get_valkey_client", lambda: valkey_client
    )


# ---------------------------------------------------------------------------
# acquire_task_lock
# ---------------------------------------------------------------------------


def test_lock_taken_and_released(lock, valkey_client):
    with acquire_task_lock("job_reconciler") as acquired:
        assert acquired is True

    lock.acquire.assert_called_once_with(blocking=False)
    lock.release.assert_called_once()
    key = valkey_client.lock.call_args[0][0]
    assert key == "celery:lock:job_reconciler"
    assert valkey_client.lock.call_args[1]["timeout"] == DEFAULT_LOCK_TIMEOUT_S


def test_lock_held_elsewhere_is_not_released(lock):
    lock.acquire.return_value = False
    with acquire_task_lock("job_reconciler") as acquired:
        assert acquired is False
    lock.release.assert_not_called()


def test_lock_released_when_body_raises(lock):
    with pytest.raises(ValueError, match="bad row"):
        with acquire_task_lock("job_reconciler"):
            raise ValueError("bad row")
    lock.release.assert_called_once()


def test_release_failure_is_logged_not_raised(lock):
    lock.release.side_effect = ConnectionError("valkey went away")
    with acquire_task_lock("job_reconciler"):
        pass


# ---------------------------------------------------------------------------
# with_task_lock
# ---------------------------------------------------------------------------


def test_decorated_task_runs_and_returns_its_result():
    @with_task_lock(lock_name="sweep", timeout_s=30)
    def sweep(n):
        return {"status": "success", "swept": n}

    assert sweep(3) == {"status": "success", "swept": 3}


def test_decorated_task_skipped_while_lock_held(lock):
    lock.acquire.return_value = False
    body = MagicMock()

    @with_task_lock(lock_name="sweep")
    def sweep():
        return body()

    assert sweep() == {"status": "skipped", "reason": "previous_task_still_running"}
    body.assert_not_called()


def test_lock_name_defaults_to_function_name(valkey_client):
    @with_task_lock()
    def nightly_sweep():
        return {}

    nightly_sweep()
    assert valkey_client.lock.call_args[0][0] == "celery:lock:nightly_sweep"
    assert nightly_sweep.__name__ == "nightly_sweep"
