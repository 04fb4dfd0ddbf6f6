"""
modelfinder: task classification for "smaller is better" model recommendations

This package maps a free-text task description onto a fixed set of task
categories using:
- A small on-device sentence-embedding model and a curated reference corpus
- k-NN similarity voting gated by a calibrated confidence threshold
- Semantic / keyword / priority fallback tiers
- An offline calibration harness that tunes the classifier's parameters
"""

__version__ = "0.1.0"
