import re
from typing import Optional

from cicero.main.logging import get_logger

logger = get_logger(__name__)

GROUP_SUFFIX = "@g.us"
PERSONAL_SUFFIX = "@c.us"

_SEPARATORS = re.compile(r"[,;]")


def parse_destinations(raw: Optional[str]) -> list[str]:
    """Split a client's chat group field into group chat ids.

    Bare ids get the group suffix. Personal chat ids are rejected since task
    notifications only go to groups.
    """
    if not raw:
        return []

    destinations: list[str] = []
    for part in _SEPARATORS.split(raw):
        candidate = part.strip()
        if not candidate:
            continue

        if candidate.endswith(PERSONAL_SUFFIX):
            logger.warning(
                "Ignoring personal chat id in group destinations",
                extra={"destination": candidate},
            )
            continue

        if "@" not in candidate:
            candidate = f"{candidate}{GROUP_SUFFIX}"

        if candidate not in destinations:
            destinations.append(candidate)

    return destinations
