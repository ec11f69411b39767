"""
Live-archive reconstruction and repackaging.

Turns the per-fragment / per-track objects of a legacy live-ingest asset into
a few contiguous media files plus a delivery manifest:

- schemas / manifests: track and manifest model, .ism / .ismc parsing
- storage: object containers (local directory, HTTP blob container)
- drm: storage decryption applied while streaming
- remuxer: stream sources and the fragmented-MP4 transmuxer
- packager: track selection, input plans, reconstruction, packager drivers
- utils: MP4 boxes, WebVTT, pipes and subprocess orchestration
- migrator: bounded-concurrency batch driver
"""

__version__ = "0.3.0"
