from __future__ import annotations

import os
import re
from functools import lru_cache
from importlib import metadata


DIST_NAME = "chatstream-server"

_SEMVER_RE = re.compile(r"^0\.\d+\.\d+$")


@lru_cache
def get_app_version() -> str:
    """Version reported in `X-Chatstream-Version` and the OpenAPI document.

    CHATSTREAM_VERSION wins when it is a valid 0.x.y string; otherwise the
    installed distribution metadata is used.
    """
    env_v = (os.getenv("CHATSTREAM_VERSION") or "").strip()
    if _SEMVER_RE.match(env_v):
        return env_v

    try:
        dist_v = metadata.version(DIST_NAME).strip()
    except metadata.PackageNotFoundError:
        return "0.0.0"
    return dist_v if _SEMVER_RE.match(dist_v) else "0.0.0"
