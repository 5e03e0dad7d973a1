import logging
from typing import Callable

from hero_loops.models.route import ProgressPhase, ProgressUpdate


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


def report_progress(
    callback: ProgressCallback | None,
    phase: ProgressPhase,
    detail: str,
    percent: float,
    features_so_far: int | None = None,
) -> None:
    """Send a progress update; a failing callback never aborts the caller."""
    logger.debug("%s: %s (%d%%)", phase.value, detail, percent)
    if callback is None:
        return

    update = ProgressUpdate(
        phase=phase,
        detail=detail,
        percent=max(0, min(100, int(round(percent)))),
        features_so_far=features_so_far,
    )
    try:
        callback(update)
    except Exception:
        logger.warning("Progress callback failed during %s", phase.value, exc_info=True)
