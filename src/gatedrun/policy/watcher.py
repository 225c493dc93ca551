"""Policy directory watcher.

Watches the policy directory recursively and recompiles it after changes.
Filesystem events come in on the watchdog observer thread and are handed to
the event loop, where a single timer is re-armed on every event: editor save
sequences (write temp file, rename over the original) collapse into one
reload once the directory has been quiet for the debounce window.

A reload never raises out of the watcher.  A broken policy set swaps in
``DenyAll``; the watcher keeps running, so fixing the files heals the state
without a restart.  Removing the directory itself does the same: the
observer is rebuilt once the directory is back.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from gatedrun.policy.store import DenyAll, PolicyState, PolicyStore, ValidPolicy, load_policy_dir

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.25
# How often to retry when the directory cannot be watched yet.
DEFAULT_RETRY_SECONDS = 5.0


class _ChangeHandler(FileSystemEventHandler):
    """Forwards every event to the watcher's loop (thread-safe)."""

    def __init__(self, watcher: "PolicyWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        self._watcher.notify_threadsafe(event.event_type, event.src_path)


class PolicyWatcher:
    """Debounced, self-healing reloader for a policy directory."""

    def __init__(
        self,
        store: PolicyStore,
        policy_dir: Path,
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        retry_interval: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        self._store = store
        self._policy_dir = Path(policy_dir)
        self._debounce = debounce
        self._retry_interval = retry_interval

        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._reload_lock = asyncio.Lock()
        self._reload_tasks: set[asyncio.Task] = set()
        self._retry_task: asyncio.Task | None = None
        self._running = False
        # Set when the watched root itself is deleted; its emitter is gone then.
        self._root_lost = False

        self.reload_count = 0
        self.status = "uninitialized"

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start observing.  Does not reload; the store is loaded at startup."""
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self.status = self._store.state.mode

        if not self._schedule_observer():
            self._retry_task = asyncio.create_task(
                self._retry_observer(), name="policy-watcher-retry"
            )

    async def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        tasks = list(self._reload_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Policy watcher stopped (%s)", self._policy_dir)

    def _schedule_observer(self) -> bool:
        """Try to start the watchdog observer; False if the directory is not watchable."""
        observer = Observer()
        try:
            observer.schedule(_ChangeHandler(self), str(self._policy_dir), recursive=True)
            observer.start()
        except OSError as exc:
            logger.error(
                "Failed to watch policy directory %s: %s (deny-all stays active until it appears)",
                self._policy_dir,
                exc,
            )
            return False
        self._observer = observer
        logger.info("Policy watcher started (%s)", self._policy_dir)
        return True

    async def _retry_observer(self) -> None:
        while self._running:
            await asyncio.sleep(self._retry_interval)
            if self._policy_dir.is_dir() and self._schedule_observer():
                self._arm_timer()
                return

    # ── Events ────────────────────────────────────────────────────────────────

    def notify_threadsafe(self, kind: str, path: str) -> None:
        """Called from the observer thread for each filesystem event."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.notify, kind, path)

    def notify(self, kind: str, path: str) -> None:
        """Record a change and (re)arm the debounce timer.  Loop thread only."""
        if not self._running:
            return
        logger.debug("Policy change detected: %s %s", kind, path)
        if kind == "deleted" and Path(path).absolute() == self._policy_dir.absolute():
            self._root_lost = True
        self._arm_timer()

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.create_task(self.reload_now(), name="policy-reload")
        self._reload_tasks.add(task)
        task.add_done_callback(self._reload_tasks.discard)

    # ── Reload ────────────────────────────────────────────────────────────────

    async def reload_now(self) -> PolicyState:
        """Recompile the directory and swap the result in.  Never raises."""
        async with self._reload_lock:
            self.status = "loading"
            try:
                state = await asyncio.to_thread(load_policy_dir, self._policy_dir)
            except Exception as exc:
                logger.exception("Policy reload crashed")
                state = DenyAll(f"policy reload failed: {exc}")

            self._store.swap(state)
            self.reload_count += 1
            self.status = state.mode

            if isinstance(state, ValidPolicy):
                logger.info(
                    "Policy reload succeeded (modules=%d, digest=%s)",
                    state.module_count,
                    state.digest[:12],
                )
            else:
                logger.error("Policy reload failed; deny-all activated: %s", state.reason)

            if self._running and (self._root_lost or not self._policy_dir.is_dir()):
                await self._rewatch()
            return state

    async def _rewatch(self) -> None:
        """Replace an observer whose root went away.

        Watches on a deleted directory never fire again, even once a directory
        with the same name is created, so the observer is rebuilt from scratch.
        """
        self._root_lost = False
        observer, self._observer = self._observer, None
        if observer is not None:
            logger.warning("Policy directory %s went away; re-watching", self._policy_dir)
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        if not self._running:
            return
        if self._policy_dir.is_dir() and self._schedule_observer():
            # Files may have landed before the new observer was scheduled.
            self._arm_timer()
        elif self._retry_task is None or self._retry_task.done():
            self._retry_task = asyncio.create_task(
                self._retry_observer(), name="policy-watcher-retry"
            )
