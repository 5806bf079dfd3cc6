"""Mirror array control: reflection solving and camera calibration."""

__version__ = "0.1.0"
