"""
Host capability interface used by the enforcement loop.

DesktopHost talks to the OS through psutil (processes), pyperclip
(clipboard), pygetwindow (window focus) and keyboard (global key hook).
The GUI libraries are imported on first use so the API process can load
this module on a headless server.
"""

import logging
import sys
from typing import Any, Callable, List, NamedTuple, Optional, Protocol

from proctorwatch.utils.exceptions import NativeCallFailure

logger = logging.getLogger(__name__)

# SetWindowPos constants (win32)
HWND_TOPMOST = -1
HWND_NOTOPMOST = -2
SWP_NOSIZE = 0x0001
SWP_NOMOVE = 0x0002


class ProcessInfo(NamedTuple):
    pid: int
    name: str


class KeyEvent(NamedTuple):
    name: str
    down: bool


# Returns True when the event was handled and must not reach other applications
KeyFilter = Callable[[KeyEvent], bool]


class HostCapabilities(Protocol):
    def list_processes(self) -> List[ProcessInfo]: ...

    def kill_process(self, pid: int) -> None: ...

    def clear_clipboard(self) -> None: ...

    def get_foreground_window(self) -> Optional[str]: ...

    def set_focus(self) -> None: ...

    def pin_window(self, on_top: bool, fullscreen: bool) -> None: ...

    def install_key_hook(self, key_filter: KeyFilter) -> None: ...

    def uninstall_key_hook(self) -> None: ...


class DesktopHost:
    """HostCapabilities over the local desktop session"""

    def __init__(self, window_title: str):
        self.window_title = window_title
        self._hook = None

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    def list_processes(self) -> List[ProcessInfo]:
        import psutil

        processes = []
        try:
            for proc in psutil.process_iter(["pid", "name"]):
                name = proc.info.get("name")
                if name:
                    processes.append(ProcessInfo(proc.info["pid"], name))
        except psutil.Error as e:
            raise NativeCallFailure("list_processes", str(e))
        return processes

    def kill_process(self, pid: int) -> None:
        import psutil

        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            raise NativeCallFailure("kill_process", f"process {pid} already exited")
        except psutil.AccessDenied:
            raise NativeCallFailure("kill_process", f"access denied for process {pid}")

    # ------------------------------------------------------------------
    # Clipboard
    # ------------------------------------------------------------------

    def clear_clipboard(self) -> None:
        import pyperclip

        try:
            pyperclip.copy("")
        except pyperclip.PyperclipException as e:
            raise NativeCallFailure("clear_clipboard", str(e))

    # ------------------------------------------------------------------
    # Window
    # ------------------------------------------------------------------

    def _windows(self):
        try:
            import pygetwindow
        except (ImportError, NotImplementedError) as e:
            # pygetwindow refuses to import on platforms it does not support
            raise NativeCallFailure("window", str(e))
        return pygetwindow

    def _exam_window(self):
        matches = self._windows().getWindowsWithTitle(self.window_title)
        if not matches:
            raise NativeCallFailure("window", f"no window titled '{self.window_title}'")
        return matches[0]

    def get_foreground_window(self) -> Optional[str]:
        active = self._windows().getActiveWindow()
        return active.title if active is not None else None

    def set_focus(self) -> None:
        window = self._exam_window()
        try:
            if window.isMinimized:
                window.restore()
            window.activate()
        except Exception as e:
            raise NativeCallFailure("set_focus", str(e))

    def pin_window(self, on_top: bool, fullscreen: bool) -> None:
        window = self._exam_window()
        try:
            if sys.platform == "win32":
                import ctypes

                ctypes.windll.user32.SetWindowPos(
                    window._hWnd,
                    HWND_TOPMOST if on_top else HWND_NOTOPMOST,
                    0, 0, 0, 0,
                    SWP_NOMOVE | SWP_NOSIZE,
                )
            if fullscreen:
                window.maximize()
            else:
                window.restore()
        except Exception as e:
            raise NativeCallFailure("pin_window", str(e))

    # ------------------------------------------------------------------
    # Keyboard
    # ------------------------------------------------------------------

    def install_key_hook(self, key_filter: KeyFilter) -> None:
        import keyboard

        if self._hook is not None:
            return

        def on_event(event: Any) -> bool:
            # keyboard suppresses the event when the callback returns False
            handled = key_filter(KeyEvent(event.name or "", event.event_type == keyboard.KEY_DOWN))
            return not handled

        try:
            self._hook = keyboard.hook(on_event, suppress=True)
        except Exception as e:
            raise NativeCallFailure("install_key_hook", str(e))
        logger.info("Global keyboard hook installed")

    def uninstall_key_hook(self) -> None:
        if self._hook is None:
            return
        import keyboard

        hook, self._hook = self._hook, None
        try:
            keyboard.unhook(hook)
        except (KeyError, ValueError) as e:
            raise NativeCallFailure("uninstall_key_hook", str(e))
        logger.info("Global keyboard hook removed")
