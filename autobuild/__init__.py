"""
autobuild - resumable, phase-sequenced build orchestration.

Drives an autonomous build through ordered phases, persisting a single
checkpoint document per project so any run can be resumed exactly where it
stopped, and tunes its own thresholds from the statistics of past runs.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
