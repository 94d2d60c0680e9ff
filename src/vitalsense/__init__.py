"""Real-time rPPG and voice biomarker processing core.

Modules are organized by pipeline stage; ``session.SessionController`` wires
them together.
"""

__all__ = [
    "app",
    "bpm",
    "capture",
    "config",
    "diagnostics",
    "errors",
    "hrv",
    "models",
    "preprocess",
    "quality",
    "recorder",
    "respiration",
    "roi",
    "service",
    "session",
    "tracker",
    "vad",
    "vitals",
    "voice",
]

__version__ = "0.1.0"
