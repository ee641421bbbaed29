"""Mission generation counter.

Every launch, stop and abort advances the generation. Async chains capture
the generation they were started under and pass it down explicitly; before
committing a state mutation they check ``is_current(generation)`` and
return without side effects when a newer launch has superseded them.
"""

import structlog

logger = structlog.get_logger(__name__)


class GenerationCounter:
    """A monotonically-advancing mission generation token."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def advance(self) -> int:
        """Start a new generation and return it."""
        self._current += 1
        logger.debug("mission_generation_advanced", generation=self._current)
        return self._current

    def is_current(self, generation: int) -> bool:
        return generation == self._current

    def is_stale(self, generation: int, operation: str = "") -> bool:
        """Return True (and log at debug) when ``generation`` has been superseded."""
        if generation == self._current:
            return False
        logger.debug(
            "stale_generation_ignored",
            generation=generation,
            current=self._current,
            operation=operation,
        )
        return True
