"""
Pytest configuration and shared fakes for the scanner tests
"""

import asyncio
import random
from typing import Callable, Dict, List, Optional

import pytest

from geom.grid_math import ProbeCoordinate
from map_surface import GeoJsonMapSurface
from realtime_results import DocumentChange
from scan_session import ScanSession
from scanner_config import ScannerSettings
from scanner_errors import SubmissionError
from streetview import LookupResult


def snap_resolver(step: float = 0.001) -> Callable[[float, float], LookupResult]:
    """Resolve every probe to the panorama on a coarse lattice, so nearby probes share ids."""
    def resolve(lat: float, lng: float) -> LookupResult:
        slat = round(round(lat / step) * step, 6)
        slng = round(round(lng / step) * step, 6)
        return LookupResult(found=True, pano_id=f"pano_{slat:.6f}_{slng:.6f}", lat=slat, lng=slng, heading=90.0)
    return resolve


class FakeProvider:
    """Imagery provider double; records calls and the peak number of concurrent lookups."""

    def __init__(self, resolver=None, delay: float = 0.0):
        self.resolver = resolver or snap_resolver(0.0001)
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def lookup(self, lat: float, lng: float, radius_m: int) -> LookupResult:
        self.calls.append((lat, lng, radius_m))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            res = self.resolver(lat, lng)
            if isinstance(res, Exception):
                raise res
            return res
        finally:
            self.in_flight -= 1


class FakeJobService:
    def __init__(self, job_id: str = "job-1", fail: Optional[Exception] = None):
        self.job_id = job_id
        self.fail = fail
        self.calls: List[dict] = []

    async def submit_job(self, envelope, points, search_query=None) -> str:
        self.calls.append({"envelope": envelope, "points": points, "search_query": search_query})
        if self.fail is not None:
            raise self.fail
        return self.job_id


class FakeDocumentStore:
    """Document store double: tests push batches per job, or make the stream fail."""

    def __init__(self):
        self._queues: Dict[str, asyncio.Queue] = {}
        self.fail: Optional[Exception] = None
        self.subscribed: List[str] = []

    def _queue(self, job_id: str) -> asyncio.Queue:
        if job_id not in self._queues:
            self._queues[job_id] = asyncio.Queue()
        return self._queues[job_id]

    def push(self, job_id: str, *changes: DocumentChange) -> None:
        self._queue(job_id).put_nowait(list(changes))

    async def changes(self, job_id: str):
        self.subscribed.append(job_id)
        if self.fail is not None:
            raise self.fail
        q = self._queue(job_id)
        while True:
            yield await q.get()


def doc(pano_id: str, change_type: str = "modified", **data) -> DocumentChange:
    data.setdefault("panoId", pano_id)
    return DocumentChange(doc_id=pano_id, change_type=change_type, data=data)


def probes(n: int, region_id: str = "r1") -> List[ProbeCoordinate]:
    return [ProbeCoordinate(lat=10.0 + i * 0.001, lng=20.0, region_id=region_id) for i in range(n)]


async def settle(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings():
    return ScannerSettings(batch_size=5, batch_delay_s=0.0)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def job_service():
    return FakeJobService()


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def surface():
    return GeoJsonMapSurface()


@pytest.fixture
def session(provider, job_service, store, surface, settings):
    return ScanSession(provider, job_service, store, surface=surface, settings=settings, rng=random.Random(7))


@pytest.fixture
def rejecting_job_service():
    return FakeJobService(fail=SubmissionError("validation failed"))
