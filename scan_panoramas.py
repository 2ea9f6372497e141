import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence

from geom.grid_math import ProbeCoordinate
from streetview import ImageryProvider, LookupResult

logger = logging.getLogger(__name__)


class EventLogger:
    """Thread-safe JSONL event logger for scan visibility.

    Writes compact JSON objects per line to a file. Each event gets a monotonically
    increasing sequence number `seq` and a timestamp `ts`.
    """
    def __init__(self, path: Optional[str]) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._seq = 0
        self._fp = None
        if path:
            os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)

    def _ensure_open(self):
        if self._fp is None and self.path:
            self._fp = open(self.path, "a", encoding="utf-8")

    def emit(self, ev: Dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            with self._lock:
                self._ensure_open()
                self._seq += 1
                ev_out = dict(ev)
                ev_out.setdefault("seq", self._seq)
                ev_out.setdefault("ts", time.time())
                self._fp.write(json.dumps(ev_out, ensure_ascii=False) + "\n")
                self._fp.flush()
        except OSError as e:
            logger.warning("event log write failed: %s", e)

    def close(self):
        with self._lock:
            if self._fp is not None:
                self._fp.close()
                self._fp = None


@dataclass(frozen=True)
class DiscoveredPanorama:
    pano_id: str
    lat: float
    lng: float
    heading: float
    region_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "panoId": self.pano_id,
            "lat": self.lat,
            "lng": self.lng,
            "heading": self.heading,
            "regionId": self.region_id,
        }


@dataclass(frozen=True)
class ScanProgress:
    processed: int
    total: int

    @property
    def done(self) -> bool:
        return self.processed >= self.total

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "total": self.total}


class DiscoveryScheduler:
    """Batched, rate-limited panorama discovery with session-wide dedup.

    All lookups of a batch run concurrently; batch k+1 starts only after every
    lookup of batch k settled, so in-flight requests never exceed batch_size.
    Results inside a batch carry no ordering guarantee.

    `seen_ids` survives individual scans. `reset()` clears it and bumps
    `generation`; scans started under an older generation stop emitting.
    """

    def __init__(
        self,
        provider: ImageryProvider,
        *,
        batch_size: int = 10,
        batch_delay_s: float = 0.05,
        radius_m: int = 50,
        events: Optional[EventLogger] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.provider = provider
        self.batch_size = batch_size
        self.batch_delay_s = batch_delay_s
        self.radius_m = radius_m
        self.events = events or EventLogger(None)
        self.seen_ids: set = set()
        self.generation = 0

    def reset(self) -> None:
        self.seen_ids.clear()
        self.generation += 1

    def forget(self, pano_ids: Iterable[str]) -> None:
        self.seen_ids.difference_update(pano_ids)

    async def _probe(self, probe: ProbeCoordinate) -> Optional[LookupResult]:
        try:
            return await self.provider.lookup(probe.lat, probe.lng, self.radius_m)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            # provider failures are empty cells, not scan failures
            logger.debug("probe %.6f,%.6f failed: %s", probe.lat, probe.lng, e)
            return None

    async def scan(
        self,
        probes: Sequence[ProbeCoordinate],
        on_progress: Optional[Callable[[ScanProgress], None]] = None,
        region_active: Optional[Callable[[str], bool]] = None,
    ) -> AsyncIterator[DiscoveredPanorama]:
        """Yield each newly discovered panorama; report progress after every batch.

        region_active lets the caller drop hits for regions removed mid-scan
        before they enter the seen-set.
        """
        generation = self.generation
        probes = list(probes)
        total = len(probes)
        self.events.emit({"type": "queued", "probes": total, "generation": generation})
        for start in range(0, total, self.batch_size):
            if generation != self.generation:
                logger.info("Scan superseded (generation %d -> %d); stopping", generation, self.generation)
                return
            batch = probes[start:start + self.batch_size]
            results: List[Optional[LookupResult]] = await asyncio.gather(*(self._probe(p) for p in batch))
            found = 0
            for probe, res in zip(batch, results):
                if generation != self.generation:
                    return
                if res is None or not res.found or not res.pano_id:
                    continue
                if res.pano_id in self.seen_ids:
                    continue
                if region_active is not None and not region_active(probe.region_id):
                    continue
                self.seen_ids.add(res.pano_id)
                found += 1
                yield DiscoveredPanorama(
                    pano_id=res.pano_id,
                    lat=res.lat if res.lat is not None else probe.lat,
                    lng=res.lng if res.lng is not None else probe.lng,
                    heading=res.heading,
                    region_id=probe.region_id,
                )
            if generation != self.generation:
                return
            progress = ScanProgress(processed=min(start + self.batch_size, total), total=total)
            self.events.emit({"type": "batch", "found": found, **progress.to_dict()})
            if on_progress is not None:
                on_progress(progress)
            if not progress.done and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)
