"""Shared pytest configuration and fixtures."""

import os

# Keep the developer's environment out of RelayOptions defaults
for _var in ("ABYSS_HOST", "ABYSS_PORT", "ABYSS_ALLOWED_ORIGINS", "ABYSS_LOG_LEVEL", "ABYSS_CONFIG"):
    os.environ.pop(_var, None)


from abyss.testing import connect, relay, relay_options, transport  # noqa: E402, F401
