"""Persisted calibration profiles."""

from mirror_control.profiles.schema import SCHEMA_VERSION, CalibrationProfile
from mirror_control.profiles.storage import (
    ProfileError,
    load_profile,
    migrate_projection_settings_v1,
    profile_from_summary,
    save_profile,
    summary_from_profile,
)

__all__ = [
    "CalibrationProfile",
    "ProfileError",
    "SCHEMA_VERSION",
    "load_profile",
    "migrate_projection_settings_v1",
    "profile_from_summary",
    "save_profile",
    "summary_from_profile",
]
