# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Configuration and defaults
# PURPOSE: Centralized configuration management
# CREATED: 31 JAN 2026
# ============================================================================
"""
Configuration Module

Provides centralized configuration and defaults for the broker control plane.
"""

from core.config.defaults import (
    LockDefaults,
    PollerDefaults,
    WatchDefaults,
    RestoreDefaults,
    StoreDefaults,
    Defaults,
    get_defaults,
    reset_defaults,
)

__all__ = [
    "LockDefaults",
    "PollerDefaults",
    "WatchDefaults",
    "RestoreDefaults",
    "StoreDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
