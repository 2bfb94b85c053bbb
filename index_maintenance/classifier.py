"""Maps a structure's fragmentation and size onto a recommended maintenance action."""

from typing import Optional, Tuple

from .models import MaintenanceCommand, Policy, RecommendedAction

REBUILD_FILL_FACTOR = 90


def classify(fragmentation_percent: float, size_units: int, policy: Policy, *,
             target: str, container: str, object_name: str,
             structure_name: str) -> Tuple[RecommendedAction, Optional[MaintenanceCommand]]:
    """Return the recommended action and its command for one structure.

    Rules are checked in order and the first match wins: the size gate, then the
    rebuild threshold, then the reorganize threshold. Pure function.
    """
    if size_units < policy.min_size_units:
        return RecommendedAction.NONE, None

    if fragmentation_percent >= policy.rebuild_threshold:
        action = RecommendedAction.REBUILD
        fill_factor = REBUILD_FILL_FACTOR
    elif fragmentation_percent >= policy.reorganize_threshold:
        action = RecommendedAction.REORGANIZE
        fill_factor = None
    else:
        return RecommendedAction.NONE, None

    command = MaintenanceCommand(
        target=target,
        verb=action,
        container=container,
        object_name=object_name,
        structure_name=structure_name,
        fill_factor=fill_factor,
        online=False
    )
    return action, command
