# ============================================================================
# VERSION - BROKER CONTROL PLANE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# ============================================================================
"""
Version information for the Broker Control Plane.

This is the single source of truth for the application version.
Updated manually for each release.
"""
# Version format: major.minor.patch.build
__version__ = "0.3.0.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Build metadata
BUILD_DATE = "2026-10-17"

EPOCH = 1
CODENAME = "Broker Control Plane"
