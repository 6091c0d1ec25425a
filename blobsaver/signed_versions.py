# signed_versions.py
import logging
from typing import List, Optional

import requests

from blobsaver.errors import Reportable

logger = logging.getLogger(__name__)

DEFAULT_API = "https://api.ipsw.me/v4/device/{identifier}?type=ipsw"
USER_AGENT = "blobsaver"


def _version_key(version: str):
    parts = []
    for p in version.split("."):
        parts.append(int(p) if p.isdigit() else 0)
    return parts


def get_all_signed_versions(device_identifier: str, api_url: str = DEFAULT_API,
                            session: Optional[requests.Session] = None,
                            timeout: float = 10) -> List[str]:
    """Versions Apple is currently signing for the device, newest first."""
    if session is None:
        with requests.Session() as own:
            return get_all_signed_versions(device_identifier, api_url, own, timeout)

    url = api_url.format(identifier=device_identifier)
    logger.info("Fetching signed versions from %s", url)
    try:
        response = session.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        raise Reportable(
            "Saving blobs failed. Check your internet connection.\n\n"
            "If your internet is working and you can connect to the website ipsw.me in your browser, "
            "please create a new issue on Github or PM me on Reddit. "
            "The log has been copied to your clipboard.",
            append_message=False,
            original_exception=e,
        ) from e

    firmwares = data.get("firmwares", []) if isinstance(data, dict) else data
    versions = []
    for fw in firmwares or []:
        if fw.get("signed") is True and fw.get("version") and fw["version"] not in versions:
            versions.append(fw["version"])
    versions.sort(key=_version_key, reverse=True)
    logger.info("Found %d signed versions for %s", len(versions), device_identifier)
    return versions
