"""Ordered boot pipeline and relative handler placement.

The launch machinery supplies a base pipeline (a HandlerList of named steps).
Extensions are expressed as placements: "run this handler immediately before
the step called <anchor>". A PlacingStrategy holds one base placement plus
any number of chained requirements and resolves them into one concrete,
inspectable order before anything executes.

Resolution splices placements in reverse declaration order, each immediately
before its anchor. With requirements R1 then R2 added on top of base
placement P, all anchored on step B::

    [..., B, ...]  ->  [..., R2, R1, P, B, ...]
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from open_fire.exceptions import AnchorNotFoundError

if TYPE_CHECKING:
    from open_fire.machine import Machine

HandlerFn = Callable[["Machine"], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Handler:
    """A named step of the boot pipeline."""

    name: str
    fn: HandlerFn


class HandlerList:
    """Ordered list of handlers addressed by name."""

    def __init__(self, handlers: Iterable[Handler] = ()) -> None:
        self._handlers: list[Handler] = list(handlers)

    def __iter__(self) -> Iterator[Handler]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, name: object) -> bool:
        return any(h.name == name for h in self._handlers)

    def __repr__(self) -> str:
        return f"HandlerList({self.names()!r})"

    def names(self) -> list[str]:
        return [h.name for h in self._handlers]

    def copy(self) -> HandlerList:
        return HandlerList(self._handlers)

    def index(self, name: str) -> int:
        for i, handler in enumerate(self._handlers):
            if handler.name == name:
                return i
        raise AnchorNotFoundError(name, context={"pipeline": self.names()})

    def append(self, handler: Handler) -> HandlerList:
        self._handlers.append(handler)
        return self

    def insert_before(self, anchor: str, handler: Handler) -> HandlerList:
        """Insert handler immediately before the step named anchor.

        Raises:
            AnchorNotFoundError: anchor is not in the list
        """
        self._handlers.insert(self.index(anchor), handler)
        return self

    def remove(self, name: str) -> HandlerList:
        self._handlers = [h for h in self._handlers if h.name != name]
        return self


@dataclass(frozen=True, slots=True)
class HandlerPlacement:
    """A handler to be inserted immediately before the step named ``anchor``."""

    handler: Handler
    anchor: str


PlacementFactory = Callable[[], HandlerPlacement]


class PlacingStrategy:
    """Base placement plus chained requirements, resolved against a base pipeline."""

    def __init__(self, base: PlacementFactory) -> None:
        self._factories: list[PlacementFactory] = [base]

    def add_requirements(self, *factories: PlacementFactory) -> PlacingStrategy:
        """Append requirement placements; returns self for chaining."""
        self._factories.extend(factories)
        return self

    def placements(self) -> list[HandlerPlacement]:
        """Placements in declaration order (base first)."""
        return [factory() for factory in self._factories]

    def resolve(self, base_pipeline: HandlerList) -> HandlerList:
        """Produce the concrete pipeline order.

        The base pipeline is not modified.

        Raises:
            AnchorNotFoundError: a placement anchors on a step absent from base_pipeline
        """
        placements = self.placements()
        for placement in placements:
            if placement.anchor not in base_pipeline:
                raise AnchorNotFoundError(
                    placement.anchor,
                    context={"handler": placement.handler.name, "pipeline": base_pipeline.names()},
                )

        resolved = base_pipeline.copy()
        for placement in reversed(placements):
            resolved.insert_before(placement.anchor, placement.handler)
        return resolved
