"""Application context: runtime paths handed to every router and service.

A plain object rather than module globals, so each app instance (and each
test) gets its own directories.
"""

from __future__ import annotations

import os


class AppContext:
    """Holds the runtime directory paths for the application."""

    def __init__(self, *, cwd: str, data_dir: str) -> None:
        self._cwd = cwd
        self._data_dir = data_dir
        self._app_dir = os.path.dirname(__file__)

    @property
    def data_dir(self) -> str:
        return self._data_dir

    @property
    def config_path(self) -> str:
        return os.path.join(self._data_dir, "config.json")

    # ── App-relative paths (never change) ──────────────────────────────

    @property
    def static_dir(self) -> str:
        return os.path.join(self._app_dir, "static")

    # ── Logs (stay in cwd, not in data_dir) ────────────────────────────

    @property
    def logs_dir(self) -> str:
        return os.path.join(self._cwd, "logs")

    def ensure_dirs(self) -> None:
        for d in (self.data_dir, self.logs_dir):
            os.makedirs(d, exist_ok=True)
