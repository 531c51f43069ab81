"""Background sync scheduling.

The scheduler never runs on a timer of its own. Callers trigger it (on
app start, after edits, on user request) and it decides whether the
trigger turns into a full background cycle, a local index refresh, or
nothing. At most one job is live at a time; triggering while one runs
returns the running job.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from notesync.concurrency import CancellationToken
from notesync.models.schema import NetworkPolicy, Result, now_millis
from notesync.preferences import PreferencesStore
from notesync.services.network import NetworkProbe, SystemNetworkProbe, is_sync_allowed
from notesync.services.storage_manager import StorageManager

logger = logging.getLogger(__name__)


def interval_elapsed(now_ms: int, last_sync_ms: int, min_interval_seconds: int) -> bool:
    """True when at least ``min_interval_seconds`` passed since the last sync.

    A watermark of 0 means no sync has ever completed, which counts as
    elapsed.
    """
    if last_sync_ms <= 0:
        return True
    return now_ms - last_sync_ms >= min_interval_seconds * 1000


def should_sync(
    now_ms: int,
    last_sync_ms: int,
    policy: NetworkPolicy,
    min_interval_seconds: int,
    probe: NetworkProbe,
) -> bool:
    """Both gates: enough time has passed and the network policy allows it."""
    return interval_elapsed(now_ms, last_sync_ms, min_interval_seconds) and is_sync_allowed(
        policy, probe
    )


class BackgroundScheduler:
    """Runs background git cycles for a :class:`StorageManager`, one at a time.

    Args:
        manager: Storage façade whose repository is synced
        preferences: Source of the sync watermark and policy overrides
        min_interval_seconds: Interval gate threshold
        policy: Network policy before preference overrides
        probe: Network state source
        clock: Returns the current time in epoch milliseconds
        sync_on_every_start: Skip the interval gate for the first trigger
            made through :meth:`on_app_start`
    """

    def __init__(
        self,
        manager: StorageManager,
        preferences: Optional[PreferencesStore] = None,
        min_interval_seconds: Optional[int] = None,
        policy: Optional[NetworkPolicy] = None,
        probe: Optional[NetworkProbe] = None,
        clock: Callable[[], int] = now_millis,
        sync_on_every_start: Optional[bool] = None,
    ) -> None:
        cfg = manager.config
        self.manager = manager
        self.preferences = preferences or manager.preferences
        self.min_interval_seconds = (
            cfg.sync_min_interval_seconds if min_interval_seconds is None else min_interval_seconds
        )
        self._policy = policy or cfg.network_policy()
        self.probe = probe or SystemNetworkProbe()
        self.clock = clock
        self.sync_on_every_start = (
            cfg.sync_on_every_start if sync_on_every_start is None else sync_on_every_start
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notesync-bg")
        self._lock = threading.Lock()
        self._job: Optional[Future] = None
        self._job_token: Optional[CancellationToken] = None
        self._started = False
        self._shutdown = False

    @property
    def policy(self) -> NetworkPolicy:
        return self.preferences.load().network_policy(self._policy)

    @property
    def current_job(self) -> Optional[Future]:
        """The live job, if any."""
        with self._lock:
            if self._job is not None and not self._job.done():
                return self._job
            return None

    def trigger(self, force: bool = False) -> Future:
        """Schedule a background job unless one is already live.

        Args:
            force: Skip the interval gate. The network gate still applies.

        Returns:
            The future of the live job (new or existing). It resolves to the
            ``Result`` of what ran, or to None when nothing was due.
        """
        with self._lock:
            if self._shutdown:
                raise RuntimeError("BackgroundScheduler has been shut down")
            if self._job is not None and not self._job.done():
                logger.debug("Background job already live; not scheduling another")
                return self._job
            token = CancellationToken()
            self._job_token = token
            self._job = self._executor.submit(self._run, force, token)
            return self._job

    def on_app_start(self) -> Future:
        """Trigger once per session; later calls return the live or last job."""
        with self._lock:
            first = not self._started
            self._started = True
            last = self._job
        if not first and last is not None:
            return last
        return self.trigger(force=self.sync_on_every_start)

    def _run(self, force: bool, token: CancellationToken) -> Optional[Result]:
        now = self.clock()
        last = self.preferences.last_database_sync_time_ms
        elapsed = interval_elapsed(now, last, self.min_interval_seconds)
        network_ok = is_sync_allowed(self.policy, self.probe)

        if (force or elapsed) and network_ok:
            logger.info("Starting background git operations")
            result = self.manager.perform_background_git_operations(cancel=token)
            if result.is_failure:
                logger.warning(f"Background git operations failed: {result.error}")
            return result

        if elapsed:
            logger.info("Network policy blocks sync; refreshing the local index only")
            return self.manager.update_database(force=False, cancel=token)

        logger.debug("Background sync not due yet")
        return None

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the live job and stop the worker thread."""
        with self._lock:
            self._shutdown = True
            if self._job_token is not None and self._job is not None and not self._job.done():
                self._job_token.cancel("scheduler shutdown")
        self._executor.shutdown(wait=wait)
        logger.debug("Background scheduler shut down")
