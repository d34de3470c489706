"""Scoped release of resources allocated while building a launch spec."""

from __future__ import annotations

from collections.abc import Callable

from open_fire._logging import get_logger

logger = get_logger(__name__)


class ResourceGuard:
    """Ordered list of release callbacks invoked exactly once.

    Callbacks run in registration order. A failing callback is logged and
    does not prevent the remaining ones from running. Callbacks registered
    after release() are invoked immediately.
    """

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._releases: list[tuple[str, Callable[[], object]]] = []
        self._released = False

    def add(self, description: str, release: Callable[[], object]) -> None:
        if self._released:
            self._run(description, release)
            return
        self._releases.append((description, release))

    @property
    def released(self) -> bool:
        return self._released

    def __len__(self) -> int:
        return len(self._releases)

    def release(self) -> None:
        """Run every registered callback once; later calls are no-ops."""
        if self._released:
            return
        self._released = True
        releases, self._releases = self._releases, []
        for description, release in releases:
            self._run(description, release)

    def _run(self, description: str, release: Callable[[], object]) -> None:
        try:
            release()
        except Exception as e:  # noqa: BLE001 - release must not mask the primary outcome
            logger.error(
                "Resource release failed",
                extra={"owner": self._owner, "resource": description, "error": str(e), "error_type": type(e).__name__},
            )
