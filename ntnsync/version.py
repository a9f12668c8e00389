"""Build identification reported by the CLI, the webhook server and written records."""

from __future__ import annotations

import os
from importlib.metadata import PackageNotFoundError, version

try:
    VERSION = version("ntnsync")
except PackageNotFoundError:
    VERSION = "dev"

COMMIT = os.environ.get("NTN_BUILD_COMMIT", "unknown")
BUILD_TIME = os.environ.get("NTN_BUILD_TIME", "unknown")
