"""App-Link deep link parsing into AEM invocations.

The attribution payload travels as URL-encoded JSON in the
``al_applink_data`` query parameter:

    fb123://host?al_applink_data={"acs_token": "...", "campaign_ids": "..."}
"""
import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from ..schemas.aem import Invocation


logger = logging.getLogger(__name__)

APPLINK_DATA_PARAM = "al_applink_data"


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def extract_applink_data(url: Optional[str]) -> Optional[dict]:
    """Decode the al_applink_data JSON object from a URL.

    Args:
        url: Deep link URL (nullable)

    Returns:
        Decoded payload dict, or None if absent or malformed
    """
    if not url:
        return None

    params = parse_qs(urlparse(url).query)
    raw = params.get(APPLINK_DATA_PARAM, [None])[0]
    if not raw:
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring non-JSON %s in %s", APPLINK_DATA_PARAM, url[:100])
        return None

    if not isinstance(data, dict):
        return None
    return data


def parse_url(url: Optional[str]) -> Optional[Invocation]:
    """Build an Invocation from a deep link.

    Requires ``acs_token`` and ``campaign_ids``; ``advertiser_id``,
    ``acs_shared_secret`` and ``acs_config_id`` are optional.

    Returns:
        New non-aggregated Invocation stamped with the current time, or None
    """
    data = extract_applink_data(url)
    if data is None:
        return None

    campaign_id = _optional_str(data.get("campaign_ids"))
    acs_token = _optional_str(data.get("acs_token"))
    if not campaign_id or not acs_token:
        logger.debug("Deep link missing campaign_ids or acs_token")
        return None

    try:
        return Invocation(
            campaign_id=campaign_id,
            acs_token=acs_token,
            acs_shared_secret=_optional_str(data.get("acs_shared_secret")),
            acs_config_id=_optional_str(data.get("acs_config_id")),
            advertiser_id=_optional_str(data.get("advertiser_id")),
        )
    except ValidationError as exc:
        logger.debug("Invalid invocation payload: %s", exc.errors(include_url=False))
        return None
