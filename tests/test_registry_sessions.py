import threading
import time
from pathlib import Path

import pytest
import torch

from fakes import FakeLoader, FakeStillModel, build_pool, make_models_dir
from matting.config import MODNET_FILE, PP_LITESEG_FILE, RVM_FILE
from matting.contracts import Quality
from matting.errors import EngineNotReady
from matting.model import BackendProbe
from matting.registry import ModelRegistry, SessionPurpose, directory_locator


def test_registry_fails_closed_without_models(tmp_path: Path):
    registry = ModelRegistry(directory_locator(make_models_dir(tmp_path)))
    assert registry.available() == []
    for purpose in SessionPurpose:
        assert registry.resolve(purpose) is None


def test_registry_preference_order(all_models_dir: Path):
    registry = ModelRegistry(directory_locator(all_models_dir))
    assert registry.resolve(SessionPurpose.STILL, Quality.HIGH).model_id == "modnet"
    assert registry.resolve(SessionPurpose.STILL, Quality.MEDIUM).model_id == "pp_liteseg"
    assert registry.resolve(SessionPurpose.STILL, Quality.LOW).model_id == "pp_liteseg"
    assert registry.resolve(SessionPurpose.LIVE_FALLBACK).model_id == "pp_liteseg"
    assert registry.resolve(SessionPurpose.RECURRENT).model_id == "rvm_mobilenetv3"
    assert len(registry.available()) == 3


def test_registry_uses_whatever_is_present(tmp_path: Path):
    registry = ModelRegistry(directory_locator(make_models_dir(tmp_path, MODNET_FILE)))
    assert registry.resolve(SessionPurpose.STILL, Quality.LOW).model_id == "modnet"
    assert registry.resolve(SessionPurpose.RECURRENT) is None


def test_registry_custom_locator(tmp_path: Path):
    weights = tmp_path / "anywhere.bin"
    weights.write_bytes(b"")
    registry = ModelRegistry(lambda d: weights if d.recurrent else None)
    assert registry.resolve(SessionPurpose.RECURRENT).model_id == "rvm_mobilenetv3"
    assert registry.resolve(SessionPurpose.STILL) is None


def test_acquire_is_idempotent(all_models_dir: Path, loader: FakeLoader):
    pool = build_pool(all_models_dir, loader)
    first = pool.acquire(SessionPurpose.STILL, prefer_gpu=False)
    second = pool.acquire(SessionPurpose.STILL, prefer_gpu=False)
    assert first is second
    assert loader.loads == [PP_LITESEG_FILE]
    assert pool.get(SessionPurpose.STILL) is first


def test_concurrent_acquire_constructs_once(all_models_dir: Path):
    class SlowLoader(FakeLoader):
        def __call__(self, path, device):
            time.sleep(0.05)
            return super().__call__(path, device)

    loader = SlowLoader({RVM_FILE: FakeStillModel()})
    pool = build_pool(all_models_dir, loader)
    results = []

    def worker():
        results.append(pool.acquire(SessionPurpose.RECURRENT, prefer_gpu=False))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert loader.loads == [RVM_FILE]
    assert len({id(r) for r in results}) == 1


def test_unavailable_gpu_falls_back_to_cpu(all_models_dir: Path, loader: FakeLoader):
    probes = []

    def probe():
        probes.append(1)
        return BackendProbe(False, torch.device("cpu"), "driver missing")

    pool = build_pool(all_models_dir, loader, probe=probe)
    session = pool.acquire(SessionPurpose.STILL, prefer_gpu=True)

    assert session is not None
    assert session.device.type == "cpu"
    assert not session.is_gpu
    assert probes == [1]
    assert "driver missing" in pool.backend_status()


def test_load_failure_reports_unavailable(all_models_dir: Path):
    pool = build_pool(all_models_dir, FakeLoader({}))
    assert pool.acquire(SessionPurpose.STILL, prefer_gpu=False) is None
    assert pool.get(SessionPurpose.STILL) is None


def test_release_and_close_all(all_models_dir: Path, loader: FakeLoader):
    pool = build_pool(all_models_dir, loader)
    recurrent = pool.acquire(SessionPurpose.RECURRENT, prefer_gpu=False)
    still = pool.acquire(SessionPurpose.STILL, prefer_gpu=False)

    pool.release(SessionPurpose.RECURRENT)
    assert pool.get(SessionPurpose.RECURRENT) is None
    assert not recurrent.ready
    assert still.ready

    pool.close_all()
    assert pool.get(SessionPurpose.STILL) is None
    assert not still.ready
    assert "Not initialized" in pool.backend_status()


def test_closed_session_raises_engine_not_ready(all_models_dir: Path, loader: FakeLoader):
    pool = build_pool(all_models_dir, loader)
    session = pool.acquire(SessionPurpose.STILL, prefer_gpu=False)
    pool.release(SessionPurpose.STILL)
    with pytest.raises(EngineNotReady):
        session.run(torch.zeros(1, 3, 8, 8))
