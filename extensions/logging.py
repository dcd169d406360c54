from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Optional
from contextvars import ContextVar

# Per-task context: which color code is being processed right now?
_CURRENT_ENTITY: ContextVar[Optional[str]] = ContextVar("_CURRENT_ENTITY", default=None)


class _EntityTagFilter(logging.Filter):
    """
    Stamp every record with the color code of the task that emitted it, so
    concurrent extractions stay distinguishable in one log stream.
    """
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.entity = _CURRENT_ENTITY.get() or "-"
        return True


class LoggingExtension:
    def __init__(
        self,
        log_file: Optional[Path] = None,
        *,
        console_level: int = logging.INFO,
        file_level: Optional[int] = None,  # default to console_level if None
    ) -> None:
        self.log_file = log_file
        self.console_level = console_level
        self.file_level = file_level if file_level is not None else console_level
        self._handlers: List[logging.Handler] = []
        self._filter = _EntityTagFilter()

        self._install_console(self.console_level)
        if log_file is not None:
            self._install_file(log_file, self.file_level)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Handlers ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(self._filter)
        ch.setFormatter(logging.Formatter("%(levelname)s: [%(entity)s] %(message)s"))
        root.addHandler(ch)
        self._handlers.append(ch)

    def _install_file(self, path: Path, level: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, mode="a", encoding="utf-8")
        fh.setLevel(level)
        fh.addFilter(self._filter)
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] [%(entity)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._handlers.append(fh)

    # ---------------- Context helpers ----------------

    def set_entity_context(self, identifier: str):
        """
        Tag log records emitted by the current task with `identifier`.
        Returns a token you must reset when done.
        """
        return _CURRENT_ENTITY.set(str(identifier))

    def reset_entity_context(self, token) -> None:
        try:
            _CURRENT_ENTITY.reset(token)
        except ValueError:
            # token created in a different context
            _CURRENT_ENTITY.set(None)

    @staticmethod
    def current_entity() -> Optional[str]:
        return _CURRENT_ENTITY.get()

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        for h in self._handlers:
            root.removeHandler(h)
            try:
                h.flush()
                h.close()
            except OSError:
                pass
        self._handlers.clear()
