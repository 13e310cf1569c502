"""
Decides whether a local event and its provider counterpart have diverged.

Only title, start, end, description and location are compared; all_day and
calendar_name differences never trigger an update.
"""

from datetime import datetime
from typing import Dict, Optional, Union

from calbridge.adapters.base import ExternalEvent
from calbridge.core.timeutil import parse_instant


def normalize(timestamp: Union[str, datetime, None]) -> Optional[datetime]:
    """UTC instant with sub-second precision dropped; the two clocks only agree to the second."""
    instant = parse_instant(timestamp)
    if instant is None:
        return None
    return instant.replace(microsecond=0)


def has_changed(local: Dict, external: ExternalEvent) -> bool:
    return (
        local.get('title') != external.title
        or normalize(local.get('start_time')) != normalize(external.start)
        or normalize(local.get('end_time')) != normalize(external.end)
        or (local.get('description') or '') != (external.description or '')
        or (local.get('location') or '') != (external.location or '')
    )
