"""
Job submission to the remote analysis service.

The orchestrator packages discovered panoramas into one batch request, keeps
track of the single active job, and surfaces rejections as SubmissionError.
Submissions are never retried automatically.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from geom.grid_math import Bounds, envelope
from scanner_errors import StateGuardViolation, SubmissionError

logger = logging.getLogger(__name__)

JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class ScanJob:
    job_id: str
    status: str = JOB_PROCESSING
    total_points: int = 0
    search_query: Optional[str] = None
    region_ids: tuple = ()
    pano_ids: frozenset = frozenset()
    created_at: float = field(default_factory=time.time)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "totalPoints": self.total_points,
            "searchQuery": {"text": self.search_query} if self.search_query else None,
            "regionIds": list(self.region_ids),
            "createdAt": self.created_at,
            "error": self.error,
        }


class JobService(Protocol):
    async def submit_job(
        self,
        envelope: Dict[str, Any],
        points: List[Dict[str, Any]],
        search_query: Optional[str] = None,
    ) -> str:
        ...


def job_envelope(panoramas: Sequence) -> Dict[str, Any]:
    """Bounding envelope over discovered panoramas, with its center as the job's region."""
    b: Bounds = envelope([(p.lat, p.lng) for p in panoramas])
    lat, lng = b.center
    return {"latitude": lat, "longitude": lng, **b.to_dict()}


def scan_point_wire(pano) -> Dict[str, Any]:
    return {
        "panoId": pano.pano_id,
        "location": {"latitude": pano.lat, "longitude": pano.lng},
        "heading": pano.heading,
    }


def build_job_payload(panoramas: Sequence, search_query: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "region": job_envelope(panoramas),
        "scanPoints": [scan_point_wire(p) for p in panoramas],
    }
    if search_query:
        payload["searchQuery"] = {"text": search_query}
    return payload


class CallableJobService:
    """Client for an HTTPS callable function (POST {"data": ...} -> {"result": ...})."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 30.0) -> None:
        if not url:
            raise ValueError("JOB_SERVICE_URL is required to submit jobs")
        self.url = url
        self.token = token
        self.timeout = timeout

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "User-Agent": "streetscan/1.0"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = Request(self.url, data=json.dumps(body).encode("utf-8"), headers=headers, method="POST")
        try:
            with urlopen(req, timeout=self.timeout) as r:
                return json.loads(r.read().decode("utf-8", errors="ignore"))
        except HTTPError as e:
            detail = ""
            try:
                detail = (json.loads(e.read().decode("utf-8", errors="ignore")).get("error") or {}).get("message", "")
            except (ValueError, AttributeError):
                pass
            raise SubmissionError(f"Job service returned HTTP {e.code}: {detail or e.reason}",
                                  context={"status": e.code}) from e
        except (URLError, OSError) as e:
            raise SubmissionError(f"Job service unreachable: {e}") from e
        except ValueError as e:
            raise SubmissionError(f"Job service returned invalid JSON: {e}") from e

    def submit_sync(self, envelope: Dict[str, Any], points: List[Dict[str, Any]],
                    search_query: Optional[str] = None) -> str:
        data: Dict[str, Any] = {"region": envelope, "scanPoints": points}
        if search_query:
            data["searchQuery"] = {"text": search_query}
        resp = self._post({"data": data})
        if "error" in resp:
            err = resp.get("error") or {}
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise SubmissionError(f"Job service rejected submission: {message}")
        result = resp.get("result") or resp.get("data") or {}
        job_id = result.get("jobId") if isinstance(result, dict) else None
        if not job_id:
            raise SubmissionError("Job service response carried no jobId", context={"response": resp})
        return str(job_id)

    async def submit_job(self, envelope: Dict[str, Any], points: List[Dict[str, Any]],
                         search_query: Optional[str] = None) -> str:
        return await asyncio.to_thread(self.submit_sync, envelope, points, search_query)


class JobOrchestrator:
    def __init__(self, service: JobService, events=None) -> None:
        self.service = service
        self.events = events
        self.active: Optional[ScanJob] = None
        self._submitting = False

    @property
    def job_id(self) -> Optional[str]:
        return self.active.job_id if self.active else None

    async def submit(self, panoramas: Sequence, regions: Sequence, search_query: Optional[str] = None) -> str:
        """Submit every discovered panorama as one job and remember its id.

        Raises StateGuardViolation (no remote call) when a job is already active or
        pending, or when nothing was discovered. Raises SubmissionError when the
        service rejects; the orchestrator then stays idle.
        """
        if self.active is not None or self._submitting:
            raise StateGuardViolation("A job is already active", context={"jobId": self.job_id})
        panoramas = list(panoramas)
        if not panoramas:
            raise StateGuardViolation("No discovered panoramas to submit")

        payload = build_job_payload(panoramas, search_query)
        self._submitting = True
        try:
            job_id = await self.service.submit_job(payload["region"], payload["scanPoints"], search_query)
        except SubmissionError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SubmissionError(f"Job submission failed: {e}") from e
        finally:
            self._submitting = False
        if not job_id:
            raise SubmissionError("Job service returned an empty job id")

        self.active = ScanJob(
            job_id=job_id,
            total_points=len(panoramas),
            search_query=search_query,
            region_ids=tuple(r.id for r in regions),
            pano_ids=frozenset(p.pano_id for p in panoramas),
        )
        logger.info("Submitted job %s with %d points across %d regions", job_id, len(panoramas), len(regions))
        if self.events is not None:
            self.events.emit({"type": "job_submitted", "jobId": job_id, "points": len(panoramas)})
        return job_id

    def mark(self, status: str, error: Optional[str] = None) -> None:
        if self.active is not None:
            self.active = replace(self.active, status=status, error=error)

    def clear(self) -> None:
        if self.active is not None:
            logger.info("Released job %s", self.active.job_id)
        self.active = None
