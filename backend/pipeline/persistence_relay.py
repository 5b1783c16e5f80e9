"""
Remote Persistence Relay

Copies a finished video from the generation provider's short-lived URL into
the tenant's Dropbox without streaming it through this service: Dropbox
fetches the URL itself (files/save_url) and we poll the job.

Destination:
    {base_dir}/AI Videos/{sanitised gallery title}/AI-Social-{UTC stamp}.mp4

The relay never raises; every failure becomes an unsuccessful RelayOutcome.
"""

import posixpath
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from config import settings
from pipeline.error_handler import ErrorCode, FailurePolicy, Operation, PipelineError, policy_for
from services.dropbox_client import (
    SaveUrlAsyncJob,
    SaveUrlComplete,
    SaveUrlFailed,
    SaveUrlJob,
)


logger = structlog.get_logger(__name__)

AI_VIDEOS_FOLDER = "AI Videos"
MAX_FOLDER_NAME = 80


@dataclass
class RelayOutcome:
    """Result of one relay attempt."""

    success: bool
    share_url: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None
    code: Optional[ErrorCode] = None


def sanitize_folder_name(name: Optional[str]) -> str:
    """
    Make a gallery title safe as a Dropbox folder name.

    Example:
        >>> sanitize_folder_name('  12 Oak St: "Final" / Edits  ')
        '12 Oak St- -Final- - Edits'
    """
    value = str(name or "").strip()[:MAX_FOLDER_NAME]
    value = re.sub(r'[\\/:*?"<>|]+', "-", value)
    value = re.sub(r"\s+", " ", value)
    return value or "Gallery"


def video_filename(moment: datetime) -> str:
    """
    Example:
        >>> video_filename(datetime(2026, 1, 2, 3, 4, 5, 678000))
        'AI-Social-2026-01-02T03-04-05-678Z.mp4'
    """
    stamp = moment.isoformat(timespec="milliseconds") + "Z"
    return f"AI-Social-{re.sub(r'[:.]', '-', stamp)}.mp4"


class PersistenceRelay:
    """
    Save a remote video into the tenant's Dropbox and return a share link.

    Usage:
        relay = PersistenceRelay(get_dropbox_client(), resolver)
        outcome = relay.relay(tenant_id, gallery_id, video_url,
                              first_asset_path="/Shoots/12 Oak St/01.jpg",
                              gallery_title="12 Oak St")
        if outcome.success:
            print(outcome.share_url)
    """

    def __init__(
        self,
        dropbox,
        resolver,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            dropbox: DropboxClient
            resolver: AssetResolver (base-directory inference)
            poll_interval: Seconds between job status checks (default: settings)
            timeout: Ceiling for the whole poll loop (default: settings)
            sleep, clock, now: Time sources (tests pass fakes)
        """
        self.dropbox = dropbox
        self.resolver = resolver
        self.poll_interval = poll_interval if poll_interval is not None else settings.RELAY_POLL_INTERVAL
        self.timeout = timeout if timeout is not None else settings.RELAY_TIMEOUT
        self.sleep = sleep
        self.clock = clock
        self.now = now
        self.logger = logger.bind(service="persistence_relay")

    def relay(
        self,
        tenant_id: str,
        gallery_id: str,
        video_url: str,
        first_asset_path: Optional[str] = None,
        gallery_title: Optional[str] = None,
    ) -> RelayOutcome:
        """Run the relay; see module docstring."""
        try:
            # Fail fast before any lookups if storage isn't connected
            self.dropbox.credentials.get(tenant_id)

            base_dir = self.resolver.resolve_base_directory(gallery_id, first_asset_path)
            folder = posixpath.join(base_dir or "/", AI_VIDEOS_FOLDER, sanitize_folder_name(gallery_title))
            target = posixpath.join(folder, video_filename(self.now()))

            self._ensure_folder(tenant_id, folder)

            self.logger.info("relay_save_url_started", gallery_id=gallery_id, target=target)
            job = self.dropbox.save_url(tenant_id, target, video_url)
            final_path = self._await_job(tenant_id, job)

            share_url = self._share_link(tenant_id, final_path)

        except Exception as e:
            if policy_for(Operation.RELAY, e) is not FailurePolicy.DEGRADE:
                raise
            code = e.code if isinstance(e, PipelineError) else ErrorCode.RELAY_FAILED
            message = e.message if isinstance(e, PipelineError) else str(e)
            self.logger.warning("relay_failed", gallery_id=gallery_id, code=code.value, error=message)
            return RelayOutcome(success=False, error=message, code=code)

        self.logger.info("relay_completed", gallery_id=gallery_id, path=final_path)
        return RelayOutcome(success=True, share_url=share_url, path=final_path)

    def _ensure_folder(self, tenant_id: str, folder: str) -> None:
        try:
            self.dropbox.create_folder(tenant_id, folder)
        except Exception as e:
            if policy_for(Operation.FOLDER_CREATE, e) is not FailurePolicy.DEGRADE:
                raise
            self.logger.warning("relay_folder_create_failed", folder=folder, error=str(e))

    def _await_job(self, tenant_id: str, job: SaveUrlJob) -> str:
        """Final Dropbox path of the saved file, polling async jobs."""
        if isinstance(job, SaveUrlComplete):
            return job.path
        if isinstance(job, SaveUrlFailed):
            raise PipelineError(ErrorCode.RELAY_FAILED, f"Dropbox save_url failed: {job.reason}")
        if not isinstance(job, SaveUrlAsyncJob):
            raise PipelineError(ErrorCode.RELAY_FAILED, "Dropbox save did not complete")

        started = self.clock()
        checks = 0
        while self.clock() - started < self.timeout:
            self.sleep(self.poll_interval)
            checks += 1
            status = self.dropbox.check_save_url_job(tenant_id, job.async_job_id)
            if isinstance(status, SaveUrlComplete):
                self.logger.info("relay_job_completed", async_job_id=job.async_job_id, checks=checks)
                return status.path
            if isinstance(status, SaveUrlFailed):
                raise PipelineError(ErrorCode.RELAY_FAILED, "Dropbox save_url failed", {"reason": status.reason})
            # SaveUrlInProgress: keep polling

        raise PipelineError(
            ErrorCode.RELAY_TIMEOUT,
            "Dropbox save did not complete",
            {"async_job_id": job.async_job_id, "checks": checks},
        )

    def _share_link(self, tenant_id: str, path: str) -> str:
        """Create a share link, or reuse an existing one."""
        try:
            return self.dropbox.create_shared_link(tenant_id, path)
        except Exception as e:
            if policy_for(Operation.SHARED_LINK_CREATE, e) is not FailurePolicy.DEGRADE:
                raise
            self.logger.info("relay_share_link_reused", path=path, reason=str(e))

        links = self.dropbox.list_shared_links(tenant_id, path, direct_only=True)
        if links:
            return links[0]
        raise PipelineError(ErrorCode.RELAY_FAILED, "Failed to create Dropbox share link")
