"""
Host-level countermeasures for one exam session.

EnforcementLoop runs three periodic enforcers under a single scheduler:

- processes (2s)  kill blacklisted processes, exact name match
- clipboard (1s)  empty the clipboard, best effort
- focus     (1s)  bring the exam window back and report focus loss

plus window pinning on start, and optionally a global keyboard hook.
Native calls run in worker threads so a slow call never stalls the
event loop.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from proctorwatch.core.host import HostCapabilities, KeyEvent
from proctorwatch.services.notifications import ViolationChannel
from proctorwatch.services.scheduling import PeriodicScheduler
from proctorwatch.utils.exceptions import NativeCallFailure

logger = logging.getLogger(__name__)


class EnforcementConfig(BaseModel):
    process_interval_seconds: float = 2.0
    clipboard_interval_seconds: float = 1.0
    focus_interval_seconds: float = 1.0
    keyboard_hook_enabled: bool = False
    window_title: str = "ProctorWatch"
    blacklist: FrozenSet[str] = frozenset()
    whitelist: FrozenSet[str] = frozenset()

    @classmethod
    def from_settings(
        cls,
        settings,
        blacklist: Iterable[str] = (),
        whitelist: Iterable[str] = (),
    ) -> "EnforcementConfig":
        return cls(
            process_interval_seconds=settings.PROCESS_ENFORCER_INTERVAL_SECONDS,
            clipboard_interval_seconds=settings.CLIPBOARD_ENFORCER_INTERVAL_SECONDS,
            focus_interval_seconds=settings.FOCUS_ENFORCER_INTERVAL_SECONDS,
            keyboard_hook_enabled=settings.KEYBOARD_HOOK_ENABLED,
            window_title=settings.EXAM_WINDOW_TITLE,
            blacklist=frozenset(name.lower() for name in blacklist),
            whitelist=frozenset(name.lower() for name in whitelist),
        )


def load_process_lists(client) -> Tuple[Set[str], Set[str]]:
    """
    Read the administrator-managed app_blacklist table.

    Returns:
        (blacklist, whitelist) of lower-cased process names. Both are
        empty when the table cannot be read; there is no built-in list.
    """
    try:
        response = client.table("app_blacklist").select("process_name, is_whitelisted").execute()
    except Exception as e:
        logger.error(f"Failed to load app blacklist: {str(e)}. Blacklist is empty.")
        return set(), set()

    blacklist, whitelist = set(), set()
    for row in response.data or []:
        name = (row.get("process_name") or "").strip().lower()
        if not name:
            continue
        (whitelist if row.get("is_whitelisted") else blacklist).add(name)

    if not blacklist:
        logger.warning("App blacklist is empty; no processes will be closed")
    else:
        logger.info(f"App blacklist loaded: {len(blacklist)} blocked, {len(whitelist)} allowed")
    return blacklist, whitelist


# ============================================================================
# KEYBOARD
# ============================================================================

_KEY_ALIASES = {
    "control": "ctrl",
    "escape": "esc",
    "win": "windows",
    "super": "windows",
    "meta": "windows",
    "cmd": "windows",
    "command": "windows",
    "alt gr": "alt",
}

MODIFIER_KEYS = {"ctrl", "alt", "shift", "windows"}


def canonical_key(name: str) -> str:
    key = name.strip().lower()
    for side in ("left ", "right "):
        if key.startswith(side):
            key = key[len(side):]
    return _KEY_ALIASES.get(key, key)


class EscapeHatch:
    """
    Recognizes the gestures that open the override authorization surface:
    the Ctrl+Shift+A chord, or three clicks on the exam timer within 800ms.
    """

    CHORD = frozenset({"ctrl", "shift", "a"})

    def __init__(
        self,
        on_open: Callable[[str], None],
        click_window_seconds: float = 0.8,
        clicks_required: int = 3,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.on_open = on_open
        self.click_window_seconds = click_window_seconds
        self.clicks_required = clicks_required
        self.monotonic = monotonic
        self._held: Set[str] = set()
        self._clicks: List[float] = []

    def key_event(self, event: KeyEvent) -> bool:
        """Returns True when the event completed the chord"""
        key = canonical_key(event.name)
        if not event.down:
            self._held.discard(key)
            return False
        self._held.add(key)
        if key == "a" and self.CHORD <= self._held:
            self.on_open("shortcut")
            return True
        return False

    def timer_click(self) -> bool:
        """Returns True when this click is the third within the window"""
        now = self.monotonic()
        self._clicks = [t for t in self._clicks if now - t <= self.click_window_seconds]
        self._clicks.append(now)
        if len(self._clicks) >= self.clicks_required:
            self._clicks = []
            self.on_open("timer_triple_click")
            return True
        return False


class KeyboardInterceptor:
    """
    Key filter for the global hook.

    Returns True ("handled", do not deliver) for Alt+Tab, the meta keys
    and Ctrl+Esc. Any other key, and any failure inside the filter,
    returns False so the event is passed to the next handler.
    """

    def __init__(self, escape_hatch: Optional[EscapeHatch] = None):
        self.escape_hatch = escape_hatch
        self._held: Set[str] = set()
        self.blocked = 0

    def __call__(self, event: KeyEvent) -> bool:
        try:
            handled = self._filter(event)
        except Exception:
            logger.exception("Keyboard filter failed; passing key through")
            return False
        if handled:
            self.blocked += 1
        return handled

    def _filter(self, event: KeyEvent) -> bool:
        key = canonical_key(event.name)

        if self.escape_hatch is not None and self.escape_hatch.key_event(event):
            return True

        if key in MODIFIER_KEYS:
            if event.down:
                self._held.add(key)
            else:
                self._held.discard(key)

        if not event.down:
            return False
        if key == "windows":
            return True
        if key == "tab" and "alt" in self._held:
            return True
        if key == "esc" and "ctrl" in self._held:
            return True
        return False


# ============================================================================
# ENFORCEMENT LOOP
# ============================================================================

class EnforcementLoop:
    """Countermeasures for one session; start() and stop() are idempotent"""

    def __init__(
        self,
        session_id: str,
        host: HostCapabilities,
        config: Optional[EnforcementConfig] = None,
        violations: Optional[ViolationChannel] = None,
    ):
        self.session_id = session_id
        self.host = host
        self.config = config or EnforcementConfig()
        self.violations = violations or ViolationChannel(f"violations:{session_id}")
        self.escape_hatch = EscapeHatch(self._request_override)
        self.interceptor = KeyboardInterceptor(self.escape_hatch)

        self._scheduler = PeriodicScheduler(f"enforcement:{session_id}")
        self._lifecycle_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._active = False
        self._hook_installed = False
        self._pinned = False
        # Serializes window calls from worker threads against stop()
        self._window_lock = threading.Lock()
        self._released = False
        self.killed: List[str] = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def active_tasks(self) -> List[str]:
        return self._scheduler.active

    @property
    def hook_installed(self) -> bool:
        return self._hook_installed

    def is_blacklisted(self, process_name: str) -> bool:
        name = process_name.lower()
        if name in self.config.whitelist:
            return False
        return name in self.config.blacklist

    async def _native(self, fn, *args) -> bool:
        try:
            await asyncio.to_thread(fn, *args)
            return True
        except NativeCallFailure as e:
            logger.warning(f"[{self.session_id}] {e.message}")
            return False

    def _unless_released(self, fn, *args) -> None:
        # Runs in a worker thread; a cancelled tick can still get here after stop()
        with self._window_lock:
            if self._released:
                return
            fn(*args)

    def _release_window(self) -> None:
        with self._window_lock:
            self._released = True

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        async with self._lifecycle_lock:
            if self._active:
                return
            self._active = True
            self._released = False
            self._loop = asyncio.get_running_loop()

            self._pinned = await self._native(self.host.pin_window, True, True)

            self._scheduler.every("processes", self.config.process_interval_seconds, self.enforce_processes)
            self._scheduler.every("clipboard", self.config.clipboard_interval_seconds, self.clear_clipboard)
            self._scheduler.every("focus", self.config.focus_interval_seconds, self.enforce_focus)

            if self.config.keyboard_hook_enabled:
                self._hook_installed = await self._native(self.host.install_key_hook, self.interceptor)

            logger.info(
                f"Enforcement started for session {self.session_id} "
                f"({len(self.config.blacklist)} blacklisted, hook={self._hook_installed})"
            )

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            if not self._active:
                return
            self._active = False

            await self._scheduler.shutdown()
            await asyncio.to_thread(self._release_window)

            if self._hook_installed:
                await self._native(self.host.uninstall_key_hook)
                self._hook_installed = False

            if self._pinned:
                await self._native(self.host.pin_window, False, False)
                self._pinned = False

            logger.info(f"Enforcement stopped for session {self.session_id}")

    # ------------------------------------------------------------------
    # Enforcers
    # ------------------------------------------------------------------

    async def enforce_processes(self) -> None:
        try:
            processes = await asyncio.to_thread(self.host.list_processes)
        except NativeCallFailure as e:
            logger.error(f"[{self.session_id}] Process scan skipped: {e.message}")
            return

        for proc in processes:
            if not self.is_blacklisted(proc.name):
                continue
            if not await self._native(self.host.kill_process, proc.pid):
                continue

            self.killed.append(proc.name)
            logger.info(f"[{self.session_id}] Closed blacklisted process {proc.name} (pid {proc.pid})")
            await self.violations.notify(
                "PROCESS_KILLED",
                f"Unauthorized application closed: {proc.name}",
                "high",
            )

    async def clear_clipboard(self) -> None:
        try:
            await asyncio.to_thread(self.host.clear_clipboard)
        except NativeCallFailure as e:
            logger.debug(f"[{self.session_id}] Clipboard not cleared: {e.message}")

    async def enforce_focus(self) -> None:
        try:
            foreground = await asyncio.to_thread(self.host.get_foreground_window)
        except NativeCallFailure as e:
            logger.error(f"[{self.session_id}] Focus check skipped: {e.message}")
            return

        if foreground and self.config.window_title.lower() in foreground.lower():
            return

        logger.warning(f"[{self.session_id}] Exam window lost focus to '{foreground}'")
        await self.violations.notify(
            "FOCUS_LOST",
            "Exam window lost focus. Return to the exam.",
            "medium",
        )
        await self._native(self._unless_released, self.host.set_focus)
        await self._native(self._unless_released, self.host.pin_window, True, True)

    # ------------------------------------------------------------------
    # Escape hatch
    # ------------------------------------------------------------------

    def _request_override(self, via: str) -> None:
        # Called from the hook thread or from the event loop
        logger.info(f"[{self.session_id}] Override surface requested via {via}")
        notify = self.violations.notify(
            "OVERRIDE_REQUESTED",
            f"Administrator override requested ({via})",
            "info",
        )
        loop = self._loop
        if loop is None or loop.is_closed():
            notify.close()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(notify)
        else:
            asyncio.run_coroutine_threadsafe(notify, loop)

    def timer_click(self) -> bool:
        return self.escape_hatch.timer_click()
