"""BridgeScore - rule-based sales call scoring, rescoring history and coaching."""

__version__ = "1.0.0"
