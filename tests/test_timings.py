import pytest

from tictify import timings

pytestmark = pytest.mark.asyncio


async def test_timeit_records_a_sample():
    async with timings.timeit("api.ticket"):
        pass

    s = timings.summary()["api.ticket"]
    assert s["n"] == 1
    assert s["mean"] >= 0


async def test_samples_stay_bounded(monkeypatch):
    monkeypatch.setattr(timings, "MAX_SAMPLES", 50)

    for i in range(500):
        timings.record_timing("api.scan", float(i))

    s = timings.summary()["api.scan"]
    assert s["n"] == 50
    # the newest samples are the ones kept
    assert s["p50"] >= 450
