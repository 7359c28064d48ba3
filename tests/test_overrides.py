import threading

import pytest

from ekco import overrides


@pytest.fixture(autouse=True)
def _reset():
    overrides.resume_prometheus()
    overrides.resume_minio()
    overrides.resume_kotsadm()
    yield
    overrides.resume_prometheus()
    overrides.resume_minio()
    overrides.resume_kotsadm()


def test_initially_not_paused():
    assert overrides.prometheus_paused() is False
    assert overrides.minio_paused() is False
    assert overrides.kotsadm_paused() is False


def test_pause_and_resume_prometheus():
    overrides.pause_prometheus()
    assert overrides.prometheus_paused() is True
    overrides.pause_prometheus()
    assert overrides.prometheus_paused() is True
    overrides.resume_prometheus()
    assert overrides.prometheus_paused() is False


def test_pause_and_resume_minio():
    overrides.pause_minio()
    assert overrides.minio_paused() is True
    overrides.pause_minio()
    assert overrides.minio_paused() is True
    overrides.resume_minio()
    assert overrides.minio_paused() is False


def test_pause_and_resume_kotsadm():
    overrides.pause_kotsadm()
    assert overrides.kotsadm_paused() is True
    overrides.pause_kotsadm()
    assert overrides.kotsadm_paused() is True
    overrides.resume_kotsadm()
    assert overrides.kotsadm_paused() is False


def test_pausing_prometheus_leaves_others_running():
    overrides.pause_prometheus()
    assert overrides.prometheus_paused() is True
    assert overrides.minio_paused() is False
    assert overrides.kotsadm_paused() is False


def test_pausing_minio_leaves_others_running():
    overrides.pause_minio()
    assert overrides.minio_paused() is True
    assert overrides.prometheus_paused() is False
    assert overrides.kotsadm_paused() is False


def test_pausing_kotsadm_leaves_others_running():
    overrides.pause_kotsadm()
    assert overrides.kotsadm_paused() is True
    assert overrides.prometheus_paused() is False
    assert overrides.minio_paused() is False


def test_concurrent_toggles_end_in_consistent_state():
    def worker():
        for _ in range(200):
            overrides.pause_minio()
            overrides.resume_minio()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert overrides.minio_paused() is False
    overrides.pause_minio()
    assert overrides.minio_paused() is True