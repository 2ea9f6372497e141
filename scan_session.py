"""
One user's scanning session.

ScanSession wires the planner, discovery scheduler, region manager, job
orchestrator, result subscription and marker sync together, and is the only
object the presentation layer (review_app.py, scan_area.py) talks to.

Every state mutation happens in plain synchronous methods on the event loop
thread, so a region removal or a refresh is never interleaved with a discovery
or a result update.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from detection_types import LatLngPoint, ScanPoint, describe_point
from geom.grid_math import Bounds, ProbeCoordinate, plan_regions
from job_client import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, JobOrchestrator, JobService
from map_surface import GeoJsonMapSurface, MapSurface
from marker_sync import MarkerSync
from realtime_results import DocumentStore, ResultSubscription
from scan_panoramas import DiscoveredPanorama, DiscoveryScheduler, EventLogger, ScanProgress
from scan_regions import FocusTarget, Region, RegionManager, RemovedRegion
from scanner_config import ScannerSettings
from scanner_errors import StateGuardViolation, TransportError
from streetview import ImageryProvider

logger = logging.getLogger(__name__)


class ScanSession:
    def __init__(
        self,
        provider: ImageryProvider,
        job_service: JobService,
        store: DocumentStore,
        *,
        surface: Optional[MapSurface] = None,
        settings: Optional[ScannerSettings] = None,
        events: Optional[EventLogger] = None,
        rng=None,
    ) -> None:
        self.settings = settings or ScannerSettings()
        self.events = events or EventLogger(self.settings.events_log)
        self.surface = surface if surface is not None else GeoJsonMapSurface()
        self.regions = RegionManager(
            self.surface,
            rng=rng,
            min_cell_size=self.settings.min_cell_size_deg,
            max_grid=self.settings.max_grid,
            on_close=self.remove_region,
        )
        self.scheduler = DiscoveryScheduler(
            provider,
            batch_size=self.settings.batch_size,
            batch_delay_s=self.settings.batch_delay_s,
            radius_m=self.settings.radius_m,
            events=self.events,
        )
        self.discovered: Dict[str, DiscoveredPanorama] = {}
        self.points: Dict[str, ScanPoint] = {}
        self.jobs = JobOrchestrator(job_service, events=self.events)
        self.results = ResultSubscription(
            store, self.points, accept=self._is_discovered, on_failure=self._on_results_failed, events=self.events,
        )
        self.results.add_listener(self._on_results)
        self.markers = MarkerSync(self.surface, on_select=self.select_point)
        self.progress = ScanProgress(0, 0)
        self.selected_pano_id: Optional[str] = None
        self._scan_tasks: set = set()

    # ---- scanning ----

    def start_scan(self, bounds: Bounds, label: Optional[str] = None) -> Region:
        """Add a region and scan just its probes. Must run on the event loop."""
        region = self.regions.add_region(bounds, label)
        self.regions.reconcile_overlays()
        self.events.emit({"type": "region_added", "regionId": region.id, "label": region.label,
                          "probes": region.grid.point_count})
        self._launch(plan_regions([region], self.settings.max_points))
        return region

    def refresh_all(self) -> asyncio.Task:
        """Drop every discovery, result, marker and the active job, then re-scan all regions."""
        regions = self.regions.list_regions()
        if not regions:
            raise StateGuardViolation("No regions to scan")
        self.scheduler.reset()
        self.results.unsubscribe()
        self.jobs.clear()
        self.markers.clear()
        self.discovered.clear()
        self.points.clear()
        self.regions.clear_panoramas()
        self.selected_pano_id = None
        probes = plan_regions(regions, self.settings.max_points)
        logger.info("Refreshing %d regions (%d probes)", len(regions), len(probes))
        return self._launch(probes)

    def _launch(self, probes: Sequence[ProbeCoordinate]) -> asyncio.Task:
        self.progress = ScanProgress(0, len(probes))
        task = asyncio.get_running_loop().create_task(self._run_scan(probes))
        self._scan_tasks.add(task)
        task.add_done_callback(self._scan_tasks.discard)
        return task

    async def _run_scan(self, probes: Sequence[ProbeCoordinate]) -> None:
        try:
            async for pano in self.scheduler.scan(probes, self._on_progress, self.regions.is_active):
                self._on_discovered(pano)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scan of %d probes failed", len(probes))

    def _on_progress(self, progress: ScanProgress) -> None:
        self.progress = progress

    def _on_discovered(self, pano: DiscoveredPanorama) -> None:
        if not self.regions.attach_panorama(pano):
            self.scheduler.forget([pano.pano_id])
            return
        self.discovered[pano.pano_id] = pano
        self.points[pano.pano_id] = ScanPoint(
            pano_id=pano.pano_id,
            location=LatLngPoint(pano.lat, pano.lng),
            heading=pano.heading,
        )
        self.events.emit({"type": "discovered", **pano.to_dict()})
        self.markers.sync(self.discovered.values(), self.points)

    @property
    def scanning(self) -> bool:
        return any(not t.done() for t in self._scan_tasks)

    async def wait_for_scans(self) -> None:
        while self._scan_tasks:
            await asyncio.gather(*list(self._scan_tasks), return_exceptions=True)

    # ---- regions ----

    def remove_region(self, region_id: str) -> Optional[RemovedRegion]:
        """Remove a region with everything it discovered, in one step."""
        removed = self.regions.remove_region(region_id)
        if removed is None:
            return None
        for pano_id in removed.pano_ids:
            self.discovered.pop(pano_id, None)
            self.points.pop(pano_id, None)
        self.scheduler.forget(removed.pano_ids)
        if self.selected_pano_id in removed.pano_ids:
            self.selected_pano_id = None
        self.regions.reconcile_overlays()
        self.markers.sync(self.discovered.values(), self.points)
        self.events.emit({"type": "region_removed", "regionId": region_id, "panoramas": len(removed.pano_ids)})
        return removed

    def focus(self, region_id: str) -> Optional[FocusTarget]:
        return self.regions.focus(region_id)

    # ---- jobs & results ----

    async def submit_job(self, search_query: Optional[str] = None) -> str:
        job_id = await self.jobs.submit(
            list(self.discovered.values()),
            self.regions.list_regions(),
            search_query,
        )
        self.results.subscribe(job_id)
        return job_id

    def _is_discovered(self, pano_id: str) -> bool:
        return pano_id in self.discovered

    def _on_results(self, changed: List[ScanPoint]) -> None:
        self.markers.sync(self.discovered.values(), self.points)
        job = self.jobs.active
        if job is None or job.status != JOB_PROCESSING:
            return
        # points discovered after submission are not part of the job
        pending = [p for p in job.pano_ids if p in self.points and not self.points[p].is_terminal]
        if not pending:
            self.jobs.mark(JOB_COMPLETED)
            logger.info("Job %s: all %d points finished", job.job_id, len(job.pano_ids))

    def _on_results_failed(self, error: TransportError) -> None:
        job = self.jobs.active
        if job is not None and job.job_id == error.context.get("jobId") and job.status == JOB_PROCESSING:
            self.jobs.mark(JOB_FAILED, str(error))

    # ---- presentation views ----

    def select_point(self, pano_id: str) -> Optional[dict]:
        point = self.points.get(pano_id)
        if point is None:
            return None
        self.selected_pano_id = pano_id
        return describe_point(point)

    def region_views(self) -> List[dict]:
        out = []
        for region in self.regions.list_regions():
            d = region.to_dict()
            d["panoramas"] = len(self.regions.owned_panoramas(region.id))
            out.append(d)
        return out

    def point_views(self) -> List[dict]:
        return [p.to_dict() for p in self.points.values()]

    def status(self) -> dict:
        processed, total = self.progress.processed, self.progress.total
        percent = int(100 * processed / total) if total else None
        job = self.jobs.active
        return {
            "scanning": self.scanning,
            "progress": {"processed": processed, "total": total, "percent": percent},
            "regions": len(self.regions.regions),
            "discovered": len(self.discovered),
            "job": job.to_dict() if job else None,
            "resultsError": str(self.results.last_error) if self.results.last_error else None,
            "selected": self.selected_pano_id,
        }

    async def close(self) -> None:
        for task in list(self._scan_tasks):
            task.cancel()
        await asyncio.gather(*list(self._scan_tasks), return_exceptions=True)
        self.results.unsubscribe()
        self.events.close()
